"""YAML configuration loader.

Loads a single YAML file holding the engine tunables and an initial
settings snapshot. Sections that are missing keep their defaults, so
an empty file is valid.

Example YAML:
    engine:
      max_attempts: 3
      retry_base_delay_seconds: 1.0
      retry_max_delay_seconds: 8.0
      log_level: INFO

    settings:
      autoApproveVaultWrites: false
      requireBashApproval: true
      alwaysAllowedTools: [Write]
      maxBudgetPerSession: 10.0
      maxTurns: 50
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .models import Settings

logger = logging.getLogger(__name__)


@dataclass
class VaultkeeperConfig:
    """Parsed YAML configuration."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    settings: Settings = field(default_factory=Settings)
    source_path: Path | None = None


def _section(raw: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        logger.warning(
            "load_yaml_config: section %r in %s is not a mapping; ignoring",
            name, path,
        )
        return {}
    return value


def parse_engine_section(engine_raw: dict[str, Any]) -> EngineConfig:
    defaults = EngineConfig()
    return EngineConfig(
        max_attempts=int(engine_raw.get(
            "max_attempts", defaults.max_attempts,
        )),
        retry_base_delay_seconds=float(engine_raw.get(
            "retry_base_delay_seconds", defaults.retry_base_delay_seconds,
        )),
        retry_max_delay_seconds=float(engine_raw.get(
            "retry_max_delay_seconds", defaults.retry_max_delay_seconds,
        )),
        log_level=str(engine_raw.get("log_level", defaults.log_level)).upper(),
    )


def load_yaml_config(path: str | Path) -> VaultkeeperConfig:
    """Load and parse a YAML config file.

    Raises FileNotFoundError for a missing file and yaml.YAMLError for
    malformed YAML; both are logged first.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s", path, exc,
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(
            f"Config file {path} must contain a mapping at the top level"
        )

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s: sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    engine = parse_engine_section(_section(raw, "engine", path))
    settings = Settings.from_dict(_section(raw, "settings", path))
    logger.info(
        "load_yaml_config: max_attempts=%d always_allowed=%s max_budget=%.2f max_turns=%d",
        engine.max_attempts,
        ",".join(sorted(settings.always_allowed_tools)) or "(none)",
        settings.max_budget_per_session,
        settings.max_turns,
    )
    return VaultkeeperConfig(engine=engine, settings=settings, source_path=path)
