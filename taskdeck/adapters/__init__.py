"""Adapters package - Bridge between the task engine and observers.

Typed engine events and the broadcast hub that fans them out to
connected clients.
"""
from __future__ import annotations

__all__ = [
    "BroadcastHub",
    "DeckEvent",
    "Observer",
]

from taskdeck.adapters.event_bus import BroadcastHub, Observer
from taskdeck.adapters.events import DeckEvent
