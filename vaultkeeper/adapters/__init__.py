"""Adapters package - Bridge between the session controller and UI frontends.

This package contains the event bus, typed events and the settings
store that connect the engine to a UI surface.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "SettingsStore",
    "dict_to_event",
]

from vaultkeeper.adapters.event_bus import EventBus
from vaultkeeper.adapters.events import dict_to_event
from vaultkeeper.adapters.settings_store import SettingsStore
