"""Sampled capture of oracle calls for offline evaluation.

UsageCapture persists one EvalRunModel row per sampled oracle call with the
prompt messages, raw and parsed output, token usage, latency and error.
The sample rate is fixed at construction. Capture is best effort: a failing
write is logged and never reaches the pipeline.
"""

from __future__ import annotations

import random
import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.pipeline.models.pipeline import EvalRunModel

logger = structlog.get_logger(__name__)


class UsageCapture:
    """Records oracle calls to the ``eval_runs`` table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        sample_rate: Fraction of calls to capture, 0.0 to 1.0.
        rng: Source of uniform floats in [0, 1); override for deterministic tests.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        sample_rate: float,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if not 0.0 <= sample_rate <= 1.0:
            raise ValueError(f"sample_rate must be within [0, 1], got {sample_rate}")
        self._session_factory = session_factory
        self._sample_rate = sample_rate
        self._rng = rng

    @property
    def sample_rate(self) -> float:
        return self._sample_rate

    def should_sample(self) -> bool:
        if self._sample_rate >= 1.0:
            return True
        if self._sample_rate <= 0.0:
            return False
        return self._rng() < self._sample_rate

    async def record(
        self,
        *,
        agent_name: str,
        messages: list[dict],
        input_variables: dict[str, Any] | None = None,
        output_text: str | None = None,
        parsed_output: dict[str, Any] | None = None,
        usage: dict[str, Any] | None = None,
        latency_ms: int | None = None,
        model_name: str | None = None,
        error: str | None = None,
    ) -> str | None:
        """Persist a captured call if it is sampled.

        Returns:
            The eval run id, or None when the call was not sampled or the
            write failed.
        """
        if not self.should_sample():
            return None

        run_id = uuid.uuid4()
        try:
            async for session in self._session_factory():
                session.add(
                    EvalRunModel(
                        id=run_id,
                        agent_name=agent_name,
                        status="failed" if error else "completed",
                        input_variables=input_variables or {},
                        input_messages=messages,
                        output_text=output_text,
                        parsed_output=parsed_output,
                        usage=usage or {},
                        latency_ms=latency_ms,
                        model_name=model_name,
                        error=error,
                    )
                )
                await session.commit()
        except Exception:
            logger.warning(
                "usage_capture.record_failed",
                agent_name=agent_name,
                exc_info=True,
            )
            return None
        return str(run_id)
