"""
Run ID container for versioned worker services.

Rules:
- Run IDs are monotonic integers.
- They are owned and incremented ONLY by the orchestrator reducer.
- This module defines structure plus pure lookup/advance helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from orchestrator.enums.service import Service


_FIELD_BY_SERVICE: dict[Service, str] = {
    Service.ASR: "asr",
    Service.LLM: "llm",
    Service.TTS: "tts",
}


@dataclass(frozen=True)
class RunIds:
    """
    Immutable container for active run IDs per service.

    Semantics:
    - A value of 0 means "no run has been started yet".
    - Once a run ID is incremented, it is never reused.
    """

    asr: int = 0
    llm: int = 0
    tts: int = 0

    def for_service(self, service: Service) -> int:
        """Active run id for a service."""
        return getattr(self, _FIELD_BY_SERVICE[service])

    def bumped(self, service: Service) -> RunIds:
        """Return a copy with the service's run id advanced by one."""
        name = _FIELD_BY_SERVICE[service]
        return replace(self, **{name: getattr(self, name) + 1})

    def as_dict(self) -> dict[str, int]:
        """Log-friendly view."""
        return {"asr": self.asr, "llm": self.llm, "tts": self.tts}
