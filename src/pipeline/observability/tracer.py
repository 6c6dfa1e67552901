"""Langfuse tracing for oracle calls made by the pipeline.

Every LiteLLM completion is traced through Langfuse success/failure
callbacks. ``PipelineTracer.trace_operation`` additionally tags the calls
made during one pipeline operation with the operation name and the
opportunity id, so a proposal or reconciliation run can be inspected as a
unit.

Without Langfuse keys both are no-ops.
"""

from __future__ import annotations

import os
import uuid
from contextlib import contextmanager
from typing import Any, Generator

import litellm
import structlog

from src.pipeline.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def _langfuse_configured(settings: Settings) -> bool:
    return bool(settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY)


def _add_callback(attr: str) -> None:
    callbacks = list(getattr(litellm, attr, None) or [])
    if "langfuse" not in callbacks:
        callbacks.append("langfuse")
    setattr(litellm, attr, callbacks)


def init_langfuse(settings: Settings | None = None) -> bool:
    """Register Langfuse as a LiteLLM success and failure callback.

    Environment variables already set win over Settings values.

    Returns:
        True if Langfuse was registered, False if keys are missing.
    """
    settings = settings or get_settings()
    if not _langfuse_configured(settings):
        logger.info("langfuse.skipped", reason="keys not configured")
        return False

    for key in ("LANGFUSE_PUBLIC_KEY", "LANGFUSE_SECRET_KEY", "LANGFUSE_HOST"):
        os.environ.setdefault(key, getattr(settings, key))
    _add_callback("success_callback")
    _add_callback("failure_callback")

    logger.info("langfuse.initialized", host=settings.LANGFUSE_HOST)
    return True


class PipelineTracer:
    """Tags LiteLLM calls with pipeline operation metadata.

    Args:
        settings: Application settings. Uses get_settings() if None.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._enabled = _langfuse_configured(settings or get_settings())

    @property
    def enabled(self) -> bool:
        return self._enabled

    @contextmanager
    def trace_operation(
        self, operation: str, opportunity_id: str
    ) -> Generator[dict[str, Any], None, None]:
        """Tag every LiteLLM call made inside the block.

        Yields:
            Trace metadata: ``trace_id``, ``operation``, ``opportunity_id``.
        """
        metadata: dict[str, Any] = {
            "trace_id": str(uuid.uuid4()),
            "operation": operation,
            "opportunity_id": opportunity_id,
        }
        if not self._enabled:
            yield metadata
            return

        previous_tags = getattr(litellm, "langfuse_default_tags", None)
        previous_metadata = getattr(litellm, "_langfuse_default_metadata", None)
        litellm.langfuse_default_tags = [
            f"operation:{operation}",
            f"opportunity:{opportunity_id}",
        ]
        litellm._langfuse_default_metadata = dict(metadata)
        logger.debug("pipeline_trace_started", **metadata)
        try:
            yield metadata
        finally:
            litellm.langfuse_default_tags = previous_tags
            litellm._langfuse_default_metadata = previous_metadata
