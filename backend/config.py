"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Validate session tuning overrides against constants.py bounds
- Provide a typed, immutable config object

Non-responsibilities:
- No orchestration logic
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from constants import (
    FRAME_BUFFER_MAX_BYTES_DEFAULT,
    FRAME_BUFFER_MAX_FRAMES_DEFAULT,
    MAX_INBOUND_PCM_BYTES,
    SILENCE_TIMEOUT_MS_DEFAULT,
    SILENCE_TIMEOUT_MS_MAX,
    SILENCE_TIMEOUT_MS_MIN,
    TRANSCRIPTION_MAX_RETRIES,
    VAD_ENERGY_THRESHOLD_DEFAULT,
    VAD_ONSET_FRAMES_DEFAULT,
)
from errors import ConfigurationError
from orchestrator.enums.barge_in import BargeInPolicy
from orchestrator.state_dataclass import SessionPolicy


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the app factory and each session gateway.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # OpenAI
    # ------------------------------------------------------------------

    openai_api_key: str | None = None
    openai_base_url: str | None = None

    transcription_model: str = "gpt-4o-mini-transcribe"
    transcription_language: str | None = None
    transcription_streaming: bool = True

    generation_model: str = "gpt-4o-mini"
    generation_priority_tier: bool = False

    synthesis_model: str = "gpt-4o-mini-tts"
    synthesis_voice: str = "alloy"

    # ------------------------------------------------------------------
    # Session tuning
    # ------------------------------------------------------------------

    silence_timeout_ms: int = SILENCE_TIMEOUT_MS_DEFAULT
    vad_onset_frames: int = VAD_ONSET_FRAMES_DEFAULT
    vad_energy_threshold: float = VAD_ENERGY_THRESHOLD_DEFAULT
    barge_in_policy: BargeInPolicy = BargeInPolicy.AFTER_PLAYBACK_START
    frame_buffer_max_frames: int = FRAME_BUFFER_MAX_FRAMES_DEFAULT
    frame_buffer_max_bytes: int = FRAME_BUFFER_MAX_BYTES_DEFAULT

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def __post_init__(self) -> None:
        if not SILENCE_TIMEOUT_MS_MIN <= self.silence_timeout_ms <= SILENCE_TIMEOUT_MS_MAX:
            raise ConfigurationError(
                f"SILENCE_TIMEOUT_MS must be within "
                f"{SILENCE_TIMEOUT_MS_MIN}-{SILENCE_TIMEOUT_MS_MAX}, "
                f"got {self.silence_timeout_ms}"
            )
        if self.vad_onset_frames <= 0:
            raise ConfigurationError("VAD_ONSET_FRAMES must be > 0")
        if not 0.0 < self.vad_energy_threshold < 1.0:
            raise ConfigurationError("VAD_ENERGY_THRESHOLD must be in (0, 1)")
        if self.frame_buffer_max_frames <= 0:
            raise ConfigurationError("FRAME_BUFFER_MAX_FRAMES must be > 0")
        if self.frame_buffer_max_bytes < MAX_INBOUND_PCM_BYTES:
            # Smaller caps could never hold the largest accepted frame
            raise ConfigurationError(
                f"FRAME_BUFFER_MAX_BYTES must be >= {MAX_INBOUND_PCM_BYTES}, "
                f"got {self.frame_buffer_max_bytes}"
            )

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    def session_policy(self) -> SessionPolicy:
        """Per-session orchestration policy placed into OrchestratorState."""
        return SessionPolicy(
            barge_in=self.barge_in_policy,
            transcription_max_retries=TRANSCRIPTION_MAX_RETRIES,
        )

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env(environ: Mapping[str, str] | None = None) -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ConfigurationError for malformed or out-of-range values.
        """
        env = os.environ if environ is None else environ

        return AppConfig(
            env=env.get("ENV", "dev"),
            log_level=env.get("LOG_LEVEL", "INFO"),

            openai_api_key=env.get("OPENAI_API_KEY"),
            openai_base_url=env.get("OPENAI_BASE_URL") or None,

            transcription_model=env.get("TRANSCRIPTION_MODEL", "gpt-4o-mini-transcribe"),
            transcription_language=env.get("TRANSCRIPTION_LANGUAGE") or None,
            transcription_streaming=_bool(env, "TRANSCRIPTION_STREAMING", True),

            generation_model=env.get("LLM_MODEL", "gpt-4o-mini"),
            generation_priority_tier=_bool(env, "LLM_PRIORITY_TIER", False),

            synthesis_model=env.get("TTS_MODEL", "gpt-4o-mini-tts"),
            synthesis_voice=env.get("TTS_VOICE", "alloy"),

            silence_timeout_ms=_int(env, "SILENCE_TIMEOUT_MS", SILENCE_TIMEOUT_MS_DEFAULT),
            vad_onset_frames=_int(env, "VAD_ONSET_FRAMES", VAD_ONSET_FRAMES_DEFAULT),
            vad_energy_threshold=_float(
                env, "VAD_ENERGY_THRESHOLD", VAD_ENERGY_THRESHOLD_DEFAULT
            ),
            barge_in_policy=_barge_in(env),
            frame_buffer_max_frames=_int(
                env, "FRAME_BUFFER_MAX_FRAMES", FRAME_BUFFER_MAX_FRAMES_DEFAULT
            ),
            frame_buffer_max_bytes=_int(
                env, "FRAME_BUFFER_MAX_BYTES", FRAME_BUFFER_MAX_BYTES_DEFAULT
            ),
        )


# ----------------------------------------------------------------------
# Env parsing helpers
# ----------------------------------------------------------------------

def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    if raw.lower() in ("1", "true", "yes", "on"):
        return True
    if raw.lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _barge_in(env: Mapping[str, str]) -> BargeInPolicy:
    raw = env.get("BARGE_IN_POLICY")
    if raw is None or raw == "":
        return BargeInPolicy.AFTER_PLAYBACK_START
    try:
        return BargeInPolicy(raw.lower())
    except ValueError as exc:
        allowed = ", ".join(p.value for p in BargeInPolicy)
        raise ConfigurationError(
            f"BARGE_IN_POLICY must be one of {allowed}, got {raw!r}"
        ) from exc
