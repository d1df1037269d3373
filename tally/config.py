"""
Environment configuration.

    TALLY_ENV               deployment name (development)
    TALLY_LOG_LEVEL         root log level (INFO)
    TALLY_LOG_DIR           directory for timestamped log files (unset)
    TALLY_DUPLICATE_WINDOW  seconds within which identical rule entries collapse (1.0)
    TALLY_TRIGGER_WINDOW    max age of a manual entry that triggers rules (1.0)
    TALLY_FOLLOWUP_WINDOW   span after a trigger in which rule entries mark it processed (2.0)
    TALLY_ALLOWED_ORIGINS   comma-separated CORS origins (*)
"""

from __future__ import annotations
from dataclasses import dataclass, field
import os

# Tolerance for float comparisons and zero-value entry suppression
EPSILON = 0.001


@dataclass(frozen=True)
class Settings:
    env: str = "development"
    log_level: str = "INFO"
    log_dir: str | None = None
    duplicate_window: float = 1.0
    trigger_window: float = 1.0
    followup_window: float = 2.0
    allowed_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> Settings:
        """Read settings from TALLY_* environment variables."""
        return cls(
            env=os.getenv("TALLY_ENV", "development"),
            log_level=os.getenv("TALLY_LOG_LEVEL", "INFO").upper(),
            log_dir=os.getenv("TALLY_LOG_DIR") or None,
            duplicate_window=float(os.getenv("TALLY_DUPLICATE_WINDOW", "1.0")),
            trigger_window=float(os.getenv("TALLY_TRIGGER_WINDOW", "1.0")),
            followup_window=float(os.getenv("TALLY_FOLLOWUP_WINDOW", "2.0")),
            allowed_origins=os.getenv("TALLY_ALLOWED_ORIGINS", "*").split(","),
        )
