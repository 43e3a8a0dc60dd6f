"""
Configuration management for the voice bridge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class BargeInPolicy:
    """
    What inbound caller audio does while a reply is playing.

    Disabled: audio during playback never interrupts.
    Enabled: audio arriving at least `grace_ms` after playback started aborts it.
    """
    enabled: bool = True
    grace_ms: int = 600

    def should_interrupt(self, elapsed_ms: float) -> bool:
        return self.enabled and elapsed_ms >= self.grace_ms


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 10000
    log_level: str = "INFO"

    # Deepgram (recognizer)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_endpointing_ms: int = 300
    deepgram_keepalive_seconds: float = 5.0
    deepgram_connect_attempts: int = 2
    deepgram_open_timeout_seconds: float = 10.0

    # OpenAI (reply generation + synthesis)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"

    # Reply generation
    llm_timeout_seconds: float = 8.0
    llm_max_input_chars: int = 800
    llm_max_tokens: int = 120
    llm_temperature: float = 0.6
    max_history_turns: int = 6

    # Synthesis
    tts_timeout_seconds: float = 15.0
    tts_fallback: str = "tone"  # "tone" | "silence"

    # Telephony audio
    frame_duration_ms: int = 20
    pad_final_frame: bool = True

    # Turn-taking
    barge_in_enabled: bool = True
    barge_in_grace_ms: int = 600
    recognizer_loss_fatal: bool = False

    # Agent settings
    agent_name: str = "Companion"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for the telephony stream."""
        return f"wss://{self.public_host}/ws"

    @property
    def barge_in(self) -> BargeInPolicy:
        return BargeInPolicy(enabled=self.barge_in_enabled, grace_ms=self.barge_in_grace_ms)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.openai_model:
            missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.tts_fallback not in ("tone", "silence"):
            raise ConfigError(
                f"Invalid TTS_FALLBACK '{self.tts_fallback}'. Expected 'tone' or 'silence'."
            )
        if self.frame_duration_ms <= 0:
            raise ConfigError("FRAME_DURATION_MS must be positive")
        if self.barge_in_grace_ms < 0:
            raise ConfigError("BARGE_IN_GRACE_MS must not be negative")
        if self.deepgram_connect_attempts < 1:
            raise ConfigError("DEEPGRAM_CONNECT_ATTEMPTS must be at least 1")

        # A missing OpenAI key is not fatal: replies fall back to a fixed phrase
        # and synthesis falls back to the configured tone/silence frames.
        if not self.openai_api_key:
            logger.warning("OPENAI_API_KEY not set; replies and speech will use fallbacks")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            deepgram_keepalive_seconds=self.deepgram_keepalive_seconds,
            deepgram_connect_attempts=self.deepgram_connect_attempts,
            openai_model=self.openai_model,
            openai_tts_model=self.openai_tts_model,
            openai_tts_voice=self.openai_tts_voice,
            llm_timeout_seconds=self.llm_timeout_seconds,
            tts_timeout_seconds=self.tts_timeout_seconds,
            tts_fallback=self.tts_fallback,
            pad_final_frame=self.pad_final_frame,
            barge_in_enabled=self.barge_in_enabled,
            barge_in_grace_ms=self.barge_in_grace_ms,
            recognizer_loss_fatal=self.recognizer_loss_fatal,
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 10000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),
        deepgram_keepalive_seconds=_get_float("DEEPGRAM_KEEPALIVE_SECONDS", 5.0),
        deepgram_connect_attempts=_get_int("DEEPGRAM_CONNECT_ATTEMPTS", 2),
        deepgram_open_timeout_seconds=_get_float("DEEPGRAM_OPEN_TIMEOUT_SECONDS", 10.0),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Reply generation
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 8.0),
        llm_max_input_chars=_get_int("LLM_MAX_INPUT_CHARS", 800),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 120),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.6),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 6),

        # Synthesis
        tts_timeout_seconds=_get_float("TTS_TIMEOUT_SECONDS", 15.0),
        tts_fallback=os.getenv("TTS_FALLBACK", "tone").strip().lower(),

        # Telephony audio
        frame_duration_ms=_get_int("FRAME_DURATION_MS", 20),
        pad_final_frame=_get_bool("PAD_FINAL_FRAME", True),

        # Turn-taking
        barge_in_enabled=_get_bool("BARGE_IN_ENABLED", True),
        barge_in_grace_ms=_get_int("BARGE_IN_GRACE_MS", 600),
        recognizer_loss_fatal=_get_bool("RECOGNIZER_LOSS_FATAL", False),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Companion"),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
