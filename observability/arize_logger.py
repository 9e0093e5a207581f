"""Arize Phoenix observability: exports operate-loop spans and instruments
the Anthropic, OpenAI (also used for OpenRouter) and Google GenAI SDKs."""

from opentelemetry import trace

import config
from utils.logger import get_logger

logger = get_logger(__name__)


def setup_observability(endpoint: str | None = None) -> bool:
    """Register an OTLP exporter and instrument the LLM SDKs.

    Connects to an already-running Phoenix server (``config.PHOENIX_ENDPOINT``
    unless ``endpoint`` is given). Does NOT launch a Phoenix process.

    Returns:
        True on success, False if the exporter packages are missing.
    """
    endpoint = endpoint or config.PHOENIX_ENDPOINT
    try:
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    except ImportError as exc:
        logger.warning(
            f"[Observability] Missing package: {exc}. "
            "Run: pip install 'llm-operate[observability]'"
        )
        return False

    # Build a provider that sends spans to the running Phoenix instance
    provider = TracerProvider()
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    # Global provider so the operate-loop spans and the instrumentors share it
    trace.set_tracer_provider(provider)

    _instrument_anthropic(provider)
    _instrument_openai(provider)
    _instrument_google_genai(provider)

    logger.info(f"[Observability] Tracing → Arize Phoenix at {endpoint}")
    return True


def _instrument_anthropic(provider):
    """Instrument the Anthropic SDK if the instrumentor is installed."""
    try:
        from openinference.instrumentation.anthropic import AnthropicInstrumentor
    except ImportError:
        logger.debug("[Observability] Anthropic instrumentor not installed")
        return
    AnthropicInstrumentor().instrument(tracer_provider=provider)


def _instrument_openai(provider):
    """Instrument the OpenAI SDK (OpenAI and OpenRouter adapters)."""
    try:
        from openinference.instrumentation.openai import OpenAIInstrumentor
    except ImportError:
        logger.debug("[Observability] OpenAI instrumentor not installed")
        return
    OpenAIInstrumentor().instrument(tracer_provider=provider)


def _instrument_google_genai(provider):
    """Instrument the google.genai SDK (Gemini adapter)."""
    try:
        from openinference.instrumentation.google_genai import GoogleGenAIInstrumentor
    except ImportError:
        logger.debug("[Observability] Google GenAI instrumentor not installed")
        return
    GoogleGenAIInstrumentor().instrument(tracer_provider=provider)


def get_tracer():
    """Return the OpenTelemetry tracer used for operate-loop spans."""
    return trace.get_tracer(config.TRACER_NAME)
