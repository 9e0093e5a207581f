"""Process-wide logging for the operate loop.

Every module grabs a named logger with ``get_logger(__name__)``.  The returned
adapter adds two conveniences on top of :mod:`logging`:

  - ``trace(msg)``: below DEBUG, for per-call chatter (tool calls, requests)
  - ``var(**values)``: dumps named values at DEBUG, one ``key=value`` per line

Handlers are installed once by ``setup_logger()``; nothing here needs teardown.
"""

import logging
import sys

import config

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_ROOT_NAME = "llm_operate"
_configured = False


class LlmLogger(logging.LoggerAdapter):
    """Logger adapter exposing trace/debug/info/warn/error/var."""

    def trace(self, msg, *args, **kwargs):
        self.log(TRACE, msg, *args, **kwargs)

    def warn(self, msg, *args, **kwargs):
        self.warning(msg, *args, **kwargs)

    def var(self, **values):
        if not self.isEnabledFor(logging.DEBUG):
            return
        for key, value in values.items():
            self.debug("%s=%r", key, value)


def setup_logger(level: str | None = None, stream=None) -> logging.Logger:
    """Attach a stream handler to the package root logger (idempotent)."""
    global _configured
    root = logging.getLogger(_ROOT_NAME)
    root.setLevel(level or config.LOG_LEVEL)
    if not _configured:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(config.LOG_FORMAT))
        root.addHandler(handler)
        root.propagate = False
        _configured = True
    return root


def get_logger(name: str) -> LlmLogger:
    """Return a child of the package root logger wrapped in LlmLogger."""
    if not name.startswith(_ROOT_NAME):
        name = f"{_ROOT_NAME}.{name}"
    return LlmLogger(logging.getLogger(name), {})
