"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TABLOOP_* env vars or
a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONTINUATION_PHRASES: tuple[str, ...] = (
    "continue",
    "keep going",
    "go on",
    "go ahead",
    "proceed",
    "carry on",
    "next",
    "yes",
    "ok",
    "okay",
    "resume",
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Session engine configuration."""

    # Defaults for new tabs
    default_model: str | None = None
    default_cwd: str = "."

    # Idle notifications closer together than this are treated as duplicates.
    idle_dedup_window_seconds: float = 0.5

    # Ralph loop defaults (the UI may override per send)
    ralph_max_iterations: int = 5
    ralph_clear_context: bool = True
    ralph_progress_file: str = "ralph-progress.md"

    # Ghost protection heuristics. Product behaviour, not a contract:
    # messages longer than the threshold that match no continuation
    # phrase cancel an active Ralph loop.
    ghost_protection_enabled: bool = True
    ghost_protection_min_length: int = 50
    continuation_phrases: tuple[str, ...] = DEFAULT_CONTINUATION_PHRASES

    # Lisa loop
    lisa_evidence_folder: str = "evidence"
    lisa_response_context_chars: int = 2000

    # Error payloads containing any of these markers are retried by the
    # user's next action and never shown.
    transient_error_markers: tuple[str, ...] = ("invalid_request_body",)

    # Advisory enrichments run on idle (title, choice detection)
    enrichment_timeout_seconds: float = 15.0
    title_fallback_length: int = 30

    # Storage for allow-lists and the open-session list. None disables it.
    data_dir: Path | None = field(default=None)

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from TABLOOP_* environment variables."""
        tab_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TABLOOP_")
        }
        if tab_vars:
            logger.info(
                "EngineConfig.from_env: TABLOOP_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(tab_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no TABLOOP_* env vars set, using defaults")

        data_dir = os.getenv("TABLOOP_DATA_DIR")
        phrases = os.getenv("TABLOOP_CONTINUATION_PHRASES")
        config = cls(
            default_model=os.getenv("TABLOOP_DEFAULT_MODEL") or None,
            default_cwd=os.getenv("TABLOOP_DEFAULT_CWD", cls.default_cwd),
            idle_dedup_window_seconds=float(os.getenv(
                "TABLOOP_IDLE_DEDUP_WINDOW", str(cls.idle_dedup_window_seconds)
            )),
            ralph_max_iterations=int(os.getenv(
                "TABLOOP_RALPH_MAX_ITERATIONS", str(cls.ralph_max_iterations)
            )),
            ralph_clear_context=_env_bool(
                "TABLOOP_RALPH_CLEAR_CONTEXT", cls.ralph_clear_context
            ),
            ralph_progress_file=os.getenv(
                "TABLOOP_RALPH_PROGRESS_FILE", cls.ralph_progress_file
            ),
            ghost_protection_enabled=_env_bool(
                "TABLOOP_GHOST_PROTECTION", cls.ghost_protection_enabled
            ),
            ghost_protection_min_length=int(os.getenv(
                "TABLOOP_GHOST_MIN_LENGTH", str(cls.ghost_protection_min_length)
            )),
            continuation_phrases=(
                tuple(p.strip().lower() for p in phrases.split(",") if p.strip())
                if phrases
                else cls.continuation_phrases
            ),
            lisa_evidence_folder=os.getenv(
                "TABLOOP_LISA_EVIDENCE_FOLDER", cls.lisa_evidence_folder
            ),
            enrichment_timeout_seconds=float(os.getenv(
                "TABLOOP_ENRICHMENT_TIMEOUT", str(cls.enrichment_timeout_seconds)
            )),
            data_dir=Path(data_dir).expanduser() if data_dir else None,
            log_level=os.getenv("TABLOOP_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: ralph_max=%d idle_window=%.2fs data_dir=%s log_level=%s",
            config.ralph_max_iterations, config.idle_dedup_window_seconds,
            config.data_dir, config.log_level,
        )
        return config
