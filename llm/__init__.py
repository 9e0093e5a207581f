"""Provider-agnostic LLM operate loop (use create_provider(), operate() or stream())."""

from .base import (
    MessageRole,
    MessageType,
    OperateOptions,
    PlaceholderOptions,
    ResponseStatus,
    StreamChunk,
    StreamChunkType,
)
from .errors import (
    BadGatewayError,
    ConfigurationError,
    LlmError,
    StreamInterruptedError,
    ToolNotFoundError,
    TooManyRequestsError,
)
from .factory import create_provider, determine_model_provider, operate, stream
from .hooks import LlmHooks
from .operate import OperateLoop
from .provider import LlmProvider
from .response import OperateResponse
from .retry import RetryPolicy
from .stream import StreamLoop

__all__ = [
    "BadGatewayError",
    "ConfigurationError",
    "LlmError",
    "LlmHooks",
    "LlmProvider",
    "MessageRole",
    "MessageType",
    "OperateLoop",
    "OperateOptions",
    "OperateResponse",
    "PlaceholderOptions",
    "ResponseStatus",
    "RetryPolicy",
    "StreamChunk",
    "StreamChunkType",
    "StreamInterruptedError",
    "StreamLoop",
    "ToolNotFoundError",
    "TooManyRequestsError",
    "create_provider",
    "determine_model_provider",
    "operate",
    "stream",
]
