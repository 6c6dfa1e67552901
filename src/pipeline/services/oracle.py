"""Reasoning oracle: prompt messages in, validated Pydantic object out.

ReasoningOracle wraps LLMService.completion with:
- An appended system instruction carrying the output model's JSON schema
- JSON extraction that tolerates markdown fences and trailing prose
- Pydantic validation of the parsed payload
- Prometheus metrics per agent and sampled eval capture

Unparseable or schema-violating output raises InvalidOracleOutputError;
transport errors from the LLM layer propagate unchanged. Callers own the
retry budget.
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from src.pipeline.actions.errors import InvalidOracleOutputError
from src.pipeline.core.monitoring import track_oracle_call
from src.pipeline.observability.capture import UsageCapture
from src.pipeline.services.llm import LLMService, get_llm_service

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def _extract_json(text: str) -> Any:
    """Parse the first JSON object or array in an LLM response.

    Strips triple-backtick fences and ignores prose before the first brace
    and after the end of the JSON value.

    Raises:
        ValueError: If no JSON value can be decoded.
    """
    cleaned = re.sub(r"^```(?:json)?\s*\n?", "", text.strip())
    cleaned = re.sub(r"\n?```\s*$", "", cleaned.strip())
    match = re.search(r"[\[{]", cleaned)
    if not match:
        raise ValueError(f"No JSON found in LLM response: {text[:200]!r}")
    value, _ = json.JSONDecoder().raw_decode(cleaned[match.start():])
    return value


def _get_llm_text(response: Any) -> str:
    """Extract text content from an LLM service response."""
    if isinstance(response, dict):
        return response.get("content") or ""
    if hasattr(response, "content"):
        return response.content or ""
    return str(response)


def schema_instruction(output_model: type[BaseModel]) -> str:
    schema = json.dumps(output_model.model_json_schema(), indent=2)
    return (
        "Respond with a single JSON object and nothing else. "
        f"The object must conform to this JSON schema:\n{schema}"
    )


class ReasoningOracle:
    """Structured-output facade over the LLM service.

    Args:
        llm_service: Completion backend. Uses get_llm_service() if None.
        capture: Optional eval capture sink.
        model: LiteLLM model group ("reasoning" or "fast").
        temperature: Sampling temperature.
        max_tokens: Completion token budget.
    """

    def __init__(
        self,
        llm_service: LLMService | None = None,
        capture: UsageCapture | None = None,
        model: str = "reasoning",
        temperature: float = 0.4,
        max_tokens: int = 4096,
    ) -> None:
        self._llm = llm_service or get_llm_service()
        self._capture = capture
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def generate(
        self,
        messages: list[dict],
        output_model: type[T],
        *,
        agent_name: str,
        input_variables: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> T:
        """Ask the oracle for an object of ``output_model``.

        Args:
            messages: Prompt messages (role/content dicts).
            output_model: Pydantic model the response must validate against.
            agent_name: Caller name for metrics, tracing and capture.
            input_variables: Prompt inputs recorded alongside the capture.
            model: Model group override for this call.

        Returns:
            Validated instance of ``output_model``.

        Raises:
            InvalidOracleOutputError: Response is not valid JSON for the model.
        """
        full_messages = [
            *messages,
            {"role": "system", "content": schema_instruction(output_model)},
        ]
        start = time.perf_counter()
        response: dict | None = None
        parsed: T | None = None
        error: str | None = None

        try:
            async with track_oracle_call(agent_name) as tracker:
                response = await self._llm.completion(
                    full_messages,
                    model=model or self._model,
                    max_tokens=self._max_tokens,
                    temperature=self._temperature,
                    metadata={"agent": agent_name},
                )
                usage = response.get("usage") or {}
                tracker["prompt_tokens"] = usage.get("prompt_tokens", 0)
                tracker["completion_tokens"] = usage.get("completion_tokens", 0)

            text = _get_llm_text(response)
            try:
                parsed = output_model.model_validate(_extract_json(text))
            except (ValueError, ValidationError) as exc:
                logger.warning(
                    "oracle_output_invalid",
                    agent=agent_name,
                    error=str(exc)[:500],
                    preview=text[:200],
                )
                raise InvalidOracleOutputError(
                    f"{agent_name} returned invalid output: {exc}"
                ) from exc
            return parsed
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            if self._capture is not None:
                await self._capture.record(
                    agent_name=agent_name,
                    messages=full_messages,
                    input_variables=input_variables,
                    output_text=_get_llm_text(response) if response else None,
                    parsed_output=parsed.model_dump(mode="json") if parsed else None,
                    usage=(response or {}).get("usage") or {},
                    latency_ms=int((time.perf_counter() - start) * 1000),
                    model_name=(response or {}).get("model"),
                    error=error,
                )
