"""Settings collaborator: snapshot source and always-allowed persistence.

With a path, settings live in a JSON file in the persisted camelCase
shape (see ``Settings.to_dict``). Without one, the store is memory
only. The always-allowed list is append-only through the engine.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

from vaultkeeper.engine.models import Settings

logger = logging.getLogger(__name__)


class SettingsStore:
    """Load, update and save operator settings."""

    def __init__(
        self,
        path: Path | str | None = None,
        initial: Settings | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        if self._path is not None and self._path.exists():
            self._settings = self._load_file(self._path)
        else:
            self._settings = initial or Settings()

    @property
    def path(self) -> Path | None:
        return self._path

    def snapshot(self) -> Settings:
        """Current settings. Frozen, so safe to hand out."""
        return self._settings

    def update(self, **changes: Any) -> Settings:
        """Replace individual fields and persist.

        Values go through the same validation as a loaded file, so an
        invalid value falls back to its default.
        """
        data = dataclasses.asdict(self._settings)
        data.update(changes)
        self._settings = Settings.from_dict(data)
        self.save()
        return self._settings

    def add_always_allowed(self, tool_name: str) -> None:
        """Persist an approve-always decision."""
        if not tool_name or tool_name in self._settings.always_allowed_tools:
            return
        self._settings = dataclasses.replace(
            self._settings,
            always_allowed_tools=self._settings.always_allowed_tools | {tool_name},
        )
        logger.info("Tool %s added to always-allowed list", tool_name)
        self.save()

    def save(self) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(self._settings.to_dict(), indent=2) + "\n"
            )
        except OSError:
            logger.warning("Failed to write settings to %s", self._path)
            raise

    @staticmethod
    def _load_file(path: Path) -> Settings:
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load settings from %s; using defaults", path)
            return Settings()
        if not isinstance(data, dict):
            logger.warning("Settings file %s is not a JSON object; using defaults", path)
            return Settings()
        logger.debug("Loaded settings from %s", path)
        return Settings.from_dict(data)
