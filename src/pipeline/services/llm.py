"""Completion backend for the reasoning oracle, via LiteLLM Router.

Two model groups are registered, each with an Anthropic primary and an
OpenAI fallback when both keys are present:
- "reasoning": proposal and evaluation calls
- "fast": per-action content composition

Activity summaries, email bodies and meeting notes reach prompts verbatim,
so non-system message content is screened for instruction-override and
prompt-exfiltration phrasing before it is sent.
"""

from __future__ import annotations

import re
from typing import Any

import structlog
from litellm import Router

from src.pipeline.config import Settings, get_settings

logger = structlog.get_logger(__name__)

# (group, provider settings attribute, litellm model id)
MODEL_GROUPS: list[tuple[str, str, str]] = [
    ("reasoning", "ANTHROPIC_API_KEY", "anthropic/claude-sonnet-4-20250514"),
    ("fast", "ANTHROPIC_API_KEY", "anthropic/claude-3-5-haiku-20241022"),
    ("reasoning", "OPENAI_API_KEY", "openai/gpt-4o"),
    ("fast", "OPENAI_API_KEY", "openai/gpt-4o-mini"),
]

# ── Untrusted content screening ──────────────────────────────────────────────

_INJECTION_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "instruction_override",
        re.compile(
            r"(ignore|disregard|forget|override)\s+(all\s+)?(your\s+|previous\s+)+instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "system_prompt_exfiltration",
        re.compile(
            r"(reveal|show|display|output|print|repeat)\s+(your\s+)?(system\s+prompt|instructions)"
            r"|repeat\s+everything\s+above"
            r"|what\s+are\s+your\s+instructions",
            re.IGNORECASE,
        ),
    ),
    ("control_characters", re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]{3,}")),
]


def detect_prompt_injection(text: str) -> tuple[bool, str | None]:
    """Return ``(True, pattern_name)`` for the first matching pattern.

    Returns ``(False, None)`` for clean text.
    """
    for name, pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            logger.warning("prompt_injection_detected", pattern=name, text_preview=text[:100])
            return True, name
    return False, None


def _scrub(content: str) -> str:
    for _, pattern in _INJECTION_PATTERNS:
        content = pattern.sub("[removed]", content)
    return content


def sanitize_messages(messages: list[dict]) -> list[dict]:
    """Replace injection phrasing in non-system messages with ``[removed]``.

    System messages are built by the pipeline itself and pass through.
    """
    sanitized = []
    for message in messages:
        content = message.get("content") or ""
        if message.get("role") == "system" or not content:
            sanitized.append(message)
            continue
        flagged, pattern_name = detect_prompt_injection(content)
        if not flagged:
            sanitized.append(message)
            continue
        cleaned = _scrub(content)
        logger.warning(
            "prompt_injection_sanitized",
            role=message.get("role"),
            pattern=pattern_name,
            removed_chars=len(content) - len(cleaned),
        )
        sanitized.append({**message, "content": cleaned})
    return sanitized


# ── LLM Service ──────────────────────────────────────────────────────────────


def build_model_list(settings: Settings) -> list[dict[str, Any]]:
    """Router deployments for every provider whose key is configured."""
    deployments = []
    for group, key_attr, model_id in MODEL_GROUPS:
        api_key = getattr(settings, key_attr)
        if api_key:
            deployments.append(
                {"model_name": group, "litellm_params": {"model": model_id, "api_key": api_key}}
            )
    return deployments


class LLMService:
    """Router-backed completions for the "reasoning" and "fast" groups.

    ``router`` is None when no provider key is configured; completions then
    raise instead of calling out.

    Args:
        settings: Application settings. Uses get_settings() if None.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        model_list = build_model_list(settings)
        if not model_list:
            logger.warning("llm_service.no_api_keys")
            self.router: Router | None = None
            return
        self.router = Router(
            model_list=model_list,
            num_retries=settings.LLM_MAX_RETRIES,
            timeout=settings.LLM_TIMEOUT,
            allowed_fails=3,
            cooldown_time=30,
        )
        logger.info(
            "llm_service.configured",
            deployments=[d["litellm_params"]["model"] for d in model_list],
        )

    async def completion(
        self,
        messages: list[dict],
        model: str = "reasoning",
        max_tokens: int = 4096,
        temperature: float = 0.7,
        metadata: dict | None = None,
    ) -> dict:
        """Run one sanitized completion.

        Returns:
            Dict with ``content``, ``model`` and ``usage`` token counts.

        Raises:
            RuntimeError: If no LLM API keys are configured.
        """
        if self.router is None:
            raise RuntimeError("No LLM API keys configured")

        response = await self.router.acompletion(
            model=model,
            messages=sanitize_messages(messages),
            max_tokens=max_tokens,
            temperature=temperature,
            metadata=metadata or {},
        )

        usage = getattr(response, "usage", None)
        return {
            "content": response.choices[0].message.content,
            "model": response.model,
            "usage": (
                {
                    "prompt_tokens": usage.prompt_tokens,
                    "completion_tokens": usage.completion_tokens,
                    "total_tokens": usage.total_tokens,
                }
                if usage
                else {}
            ),
        }


_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    """Process-wide LLMService built from get_settings()."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
