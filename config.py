"""Configuration for the LLM operate loop."""

import os
from dotenv import load_dotenv

# Base directory
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Load .env from the project root (silently ignored if the file doesn't exist)
load_dotenv(os.path.join(BASE_DIR, ".env"))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── LLM provider ──────────────────────────────────────────────────────────────
# Set LLM_PROVIDER to one of four options:
#   "openai"     → OpenAI Responses API
#   "anthropic"  → Anthropic Messages API
#   "gemini"     → Google Gemini via google-genai
#   "openrouter" → OpenRouter (OpenAI-compatible Chat Completions)

LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").lower()

# ── Anthropic settings ────────────────────────────────────────────────────────
ANTHROPIC_MODEL        = os.getenv("ANTHROPIC_MODEL", "claude-opus-4-6")
ANTHROPIC_API_KEY_NAME = "ANTHROPIC_API_KEY"
ANTHROPIC_BASE_URL     = os.getenv("ANTHROPIC_BASE_URL")  # None = SDK default

# ── OpenAI settings ───────────────────────────────────────────────────────────
OPENAI_MODEL        = os.getenv("OPENAI_MODEL", "gpt-4o")
OPENAI_API_KEY_NAME = "OPENAI_API_KEY"
OPENAI_BASE_URL     = os.getenv("OPENAI_BASE_URL")  # None = SDK default

# ── Gemini settings ───────────────────────────────────────────────────────────
GEMINI_MODEL        = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_API_KEY_NAME = "GEMINI_API_KEY"

# ── OpenRouter settings (OpenAI-compatible endpoint) ──────────────────────────
OPENROUTER_MODEL        = os.getenv("OPENROUTER_MODEL", "openai/gpt-4o")
OPENROUTER_API_KEY_NAME = "OPENROUTER_API_KEY"
OPENROUTER_BASE_URL     = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")

# Output token ceiling for vendors that require one (Anthropic)
MAX_TOKENS = int(os.getenv("MAX_TOKENS", "8192"))

# ── Operate loop limits ───────────────────────────────────────────────────────
MAX_TURNS_DEFAULT        = int(os.getenv("MAX_TURNS_DEFAULT", "12"))
MAX_TURNS_ABSOLUTE_LIMIT = 72

# ── Retry settings (seconds) ──────────────────────────────────────────────────
RETRY_MAX_ATTEMPTS       = int(os.getenv("RETRY_MAX_ATTEMPTS", "6"))
RETRY_MAX_ATTEMPTS_LIMIT = 72
RETRY_INITIAL_DELAY      = float(os.getenv("RETRY_INITIAL_DELAY", "1.0"))
RETRY_MAX_DELAY          = float(os.getenv("RETRY_MAX_DELAY", "32.0"))
RETRY_BACKOFF_FACTOR     = float(os.getenv("RETRY_BACKOFF_FACTOR", "2.0"))
# Errors no adapter recognises are retried unless this is switched off
RETRY_UNKNOWN_ERRORS     = _env_bool("RETRY_UNKNOWN_ERRORS", "true")
# Suggested wait after a vendor rate-limit response
RATE_LIMIT_DELAY         = float(os.getenv("RATE_LIMIT_DELAY", "60.0"))

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL  = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s %(levelname)s [%(name)s] %(message)s")

# ── Observability ─────────────────────────────────────────────────────────────
PHOENIX_ENDPOINT = os.getenv("PHOENIX_ENDPOINT", "http://localhost:6006/v1/traces")
TRACER_NAME      = "llm_operate"
