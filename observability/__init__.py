"""Tracing setup for LLM SDK calls and operate-loop turns."""
from .arize_logger import setup_observability, get_tracer

__all__ = ["setup_observability", "get_tracer"]
