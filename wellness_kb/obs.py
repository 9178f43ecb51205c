"""Observability for the pipelines: optional Langfuse traces and OpenTelemetry spans.

- Trace: records ingestion / retrieval / generation runs in Langfuse when
  LANGFUSE_HOST, LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY are all set and the
  langfuse package is importable; otherwise every method is a no-op.
- span: wraps a pipeline stage in an OpenTelemetry span; a no-op without the
  opentelemetry packages. Spans go to the console only with OTEL_CONSOLE_EXPORT=1,
  so a deployment can install its own exporter.

Tracing backends never fail a pipeline call: their errors are logged at DEBUG.
"""

from __future__ import annotations

import functools
import logging
import os
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

from wellness_kb.config import settings

logger = logging.getLogger(__name__)

try:
    from langfuse import Langfuse
except ImportError:  # pragma: no cover
    Langfuse = None  # type: ignore

try:
    from opentelemetry import trace as otel_trace
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
except ImportError:  # pragma: no cover
    otel_trace = None  # type: ignore


@functools.lru_cache(maxsize=1)
def langfuse_client() -> Optional[Any]:
    """Memoized Langfuse client, or None when tracing is not configured."""
    configured = settings.LANGFUSE_HOST and settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY
    if not configured or Langfuse is None:
        return None
    logger.info("Langfuse tracing enabled (%s)", settings.LANGFUSE_HOST)
    return Langfuse(
        host=settings.LANGFUSE_HOST,
        public_key=settings.LANGFUSE_PUBLIC_KEY,
        secret_key=settings.LANGFUSE_SECRET_KEY,
    )


@functools.lru_cache(maxsize=1)
def _tracer():
    if otel_trace is None:
        return None
    if os.environ.get("OTEL_CONSOLE_EXPORT", "0") == "1":
        provider = TracerProvider()
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        otel_trace.set_tracer_provider(provider)
    return otel_trace.get_tracer("wellness_kb")


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """Run the enclosed block inside an OpenTelemetry span named `name`."""
    tracer = _tracer()
    if tracer is None:
        yield
        return
    with tracer.start_as_current_span(name, attributes=attributes or {}):
        yield


class Trace:
    """One Langfuse trace per pipeline run; inert when Langfuse is off."""

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        self.name = name
        self._trace = None
        client = langfuse_client()
        if client is not None:
            self._trace = self._call(lambda: client.trace(name=name, input=input or {}), "start")

    @property
    def enabled(self) -> bool:
        return self._trace is not None

    def _call(self, fn: Callable[[], Any], what: str) -> Any:
        try:
            return fn()
        except Exception as exc:
            logger.debug("Langfuse %s for trace %s dropped: %s", what, self.name, exc)
            return None

    def event(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.enabled:
            self._call(lambda: self._trace.event(name=name, input=data or {}), f"event {name}")

    def generation(self, name: str, prompt: str, output: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Record an LLM call made with settings.OPENAI_MODEL."""
        if self.enabled:
            self._call(
                lambda: self._trace.generation(
                    name=name, input=prompt, output=output, metadata=metadata or {}, model=settings.OPENAI_MODEL
                ),
                f"generation {name}",
            )

    def end(self, output: Optional[Dict[str, Any]] = None) -> None:
        if self.enabled:
            self._call(lambda: self._trace.update(output=output or {}), "end")
