"""YAML configuration loader.

Loads a single YAML file layered over the TABLOOP_* environment
defaults. Missing sections keep the environment value.

Example YAML:
    engine:
      default_model: gpt-5
      default_cwd: /path/to/project
      data_dir: ~/.tabloop
      log_level: DEBUG
      idle_dedup_window_seconds: 0.5
      transient_error_markers: [invalid_request_body]

    ralph:
      max_iterations: 10
      clear_context: true
      progress_file: ralph-progress.md

    lisa:
      evidence_folder: evidence
      response_context_chars: 2000

    ghost_protection:
      enabled: true
      min_length: 50
      continuation_phrases: [continue, keep going, proceed]
"""
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"YAML section '{name}' must be a mapping, got {type(value).__name__}")
    return value


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load and parse a YAML config file into an EngineConfig.

    *base* defaults to ``EngineConfig.from_env()`` so explicit YAML
    values win over environment values, which win over defaults.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {path} must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )

    config = base if base is not None else EngineConfig.from_env()
    overrides: dict[str, Any] = {}

    engine_raw = _section(raw, "engine")
    for key in (
        "default_model",
        "default_cwd",
        "log_level",
        "idle_dedup_window_seconds",
        "enrichment_timeout_seconds",
        "title_fallback_length",
    ):
        if key in engine_raw:
            overrides[key] = engine_raw[key]
    if "transient_error_markers" in engine_raw:
        overrides["transient_error_markers"] = tuple(engine_raw["transient_error_markers"] or ())
    if engine_raw.get("data_dir"):
        overrides["data_dir"] = Path(str(engine_raw["data_dir"])).expanduser()

    ralph_raw = _section(raw, "ralph")
    if "max_iterations" in ralph_raw:
        overrides["ralph_max_iterations"] = int(ralph_raw["max_iterations"])
    if "clear_context" in ralph_raw:
        overrides["ralph_clear_context"] = bool(ralph_raw["clear_context"])
    if "progress_file" in ralph_raw:
        overrides["ralph_progress_file"] = str(ralph_raw["progress_file"])

    lisa_raw = _section(raw, "lisa")
    if "evidence_folder" in lisa_raw:
        overrides["lisa_evidence_folder"] = str(lisa_raw["evidence_folder"])
    if "response_context_chars" in lisa_raw:
        overrides["lisa_response_context_chars"] = int(lisa_raw["response_context_chars"])

    ghost_raw = _section(raw, "ghost_protection")
    if "enabled" in ghost_raw:
        overrides["ghost_protection_enabled"] = bool(ghost_raw["enabled"])
    if "min_length" in ghost_raw:
        overrides["ghost_protection_min_length"] = int(ghost_raw["min_length"])
    if "continuation_phrases" in ghost_raw:
        overrides["continuation_phrases"] = tuple(
            str(p).strip().lower() for p in ghost_raw["continuation_phrases"] or ()
        )

    if overrides:
        logger.debug("load_yaml_config: applying overrides %s", sorted(overrides))
    return replace(config, **overrides)
