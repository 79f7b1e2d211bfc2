"""Configuration management for API keys and pipeline settings."""

import os
from typing import Optional
from pathlib import Path

from dotenv import load_dotenv

# config.py is in cuecard/, .env is in project root
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path, override=True)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


class Config:
    """Application configuration from environment variables."""

    # Deepgram streaming transcription
    DEEPGRAM_API_KEY: Optional[str] = os.getenv("DEEPGRAM_API_KEY")
    DEEPGRAM_MODEL: str = os.getenv("DEEPGRAM_MODEL", "nova-2")

    # Suggestion provider: "groq", "ollama" or "gemini"
    SUGGEST_PROVIDER: str = os.getenv("SUGGEST_PROVIDER", "groq").strip().lower()

    GROQ_API_KEY: Optional[str] = os.getenv("GROQ_API_KEY")
    GROQ_MODEL: str = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
    GROQ_BASE_URL: str = os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1")

    # Ollama settings (no API key needed, it's local)
    OLLAMA_URL: str = os.getenv("OLLAMA_URL", "http://127.0.0.1:11434")
    OLLAMA_MODEL: str = os.getenv("OLLAMA_MODEL", "gemma3:4b")

    GEMINI_API_KEY: Optional[str] = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

    # Capture
    TARGET_BUFFER_MS: int = _env_int("TARGET_BUFFER_MS", 100)
    LEVEL_TICK_MS: int = _env_int("LEVEL_TICK_MS", 100)
    IDLE_TIMEOUT_MS: int = _env_int("IDLE_TIMEOUT_MS", 500)
    MAX_CAPTURE_BUFFER_MS: int = _env_int("MAX_CAPTURE_BUFFER_MS", 2000)

    # Transcript ordering
    TRANSCRIPT_BUFFER_WINDOW_MS: int = _env_int("TRANSCRIPT_BUFFER_WINDOW_MS", 2000)
    TRANSCRIPT_FLUSH_INTERVAL_MS: int = _env_int("TRANSCRIPT_FLUSH_INTERVAL_MS", 100)

    # Context window
    CONTEXT_MAX_RECENT: int = _env_int("CONTEXT_MAX_RECENT", 3)
    CONTEXT_MAX_HISTORY: int = _env_int("CONTEXT_MAX_HISTORY", 10)
    SUMMARY_CHAR_THRESHOLD: int = _env_int("SUMMARY_CHAR_THRESHOLD", 200)

    # Suggestions
    SUGGEST_SHORT_DEBOUNCE_MS: int = _env_int("SUGGEST_SHORT_DEBOUNCE_MS", 200)
    SUGGEST_LONG_DEBOUNCE_MS: int = _env_int("SUGGEST_LONG_DEBOUNCE_MS", 500)
    SUGGEST_PARTIAL_MIN_CHARS: int = _env_int("SUGGEST_PARTIAL_MIN_CHARS", 100)
    SUGGEST_MAX_LABEL_WORDS: int = _env_int("SUGGEST_MAX_LABEL_WORDS", 15)
    SUGGEST_INFLIGHT_POLICY: str = os.getenv("SUGGEST_INFLIGHT_POLICY", "cancel").strip().lower()

    # Server
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = _env_int("PORT", 8010)

    @classmethod
    def transcription_ready(cls) -> bool:
        return bool(cls.DEEPGRAM_API_KEY)

    @classmethod
    def generation_ready(cls) -> bool:
        if cls.SUGGEST_PROVIDER == "ollama":
            return True
        if cls.SUGGEST_PROVIDER == "groq":
            return bool(cls.GROQ_API_KEY)
        if cls.SUGGEST_PROVIDER == "gemini":
            return bool(cls.GEMINI_API_KEY)
        return False

    @classmethod
    def validate(cls) -> list[str]:
        """Validate configuration and return list of missing required settings."""
        missing = []

        if not cls.DEEPGRAM_API_KEY:
            missing.append("DEEPGRAM_API_KEY")

        if cls.SUGGEST_PROVIDER == "groq" and not cls.GROQ_API_KEY:
            missing.append("GROQ_API_KEY (required when SUGGEST_PROVIDER=groq)")
        elif cls.SUGGEST_PROVIDER == "gemini" and not cls.GEMINI_API_KEY:
            missing.append("GEMINI_API_KEY (required when SUGGEST_PROVIDER=gemini)")
        elif cls.SUGGEST_PROVIDER not in ("groq", "ollama", "gemini"):
            missing.append(f"SUGGEST_PROVIDER (unknown provider '{cls.SUGGEST_PROVIDER}')")

        if cls.SUGGEST_INFLIGHT_POLICY not in ("cancel", "defer"):
            missing.append("SUGGEST_INFLIGHT_POLICY (must be 'cancel' or 'defer')")

        return missing
