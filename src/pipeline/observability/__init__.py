"""Observability package for Langfuse tracing and oracle-call capture.

Provides:
- PipelineTracer: Tags LiteLLM calls with pipeline operation metadata
- UsageCapture: Sampled persistence of oracle calls for offline evaluation
- init_langfuse: Initialize Langfuse callbacks on LiteLLM

All components degrade gracefully when Langfuse is not configured.
"""

from __future__ import annotations


def __getattr__(name: str):
    if name == "PipelineTracer":
        from src.pipeline.observability.tracer import PipelineTracer
        return PipelineTracer
    if name == "init_langfuse":
        from src.pipeline.observability.tracer import init_langfuse
        return init_langfuse
    if name == "UsageCapture":
        from src.pipeline.observability.capture import UsageCapture
        return UsageCapture
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "PipelineTracer",
    "UsageCapture",
    "init_langfuse",
]
