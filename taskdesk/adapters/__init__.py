"""Adapters package - bridge between the task engine and UI frontends.

Typed events and the event bus that queues them for consumers.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "TaskEvent",
    "dict_to_event",
    "event_to_dict",
]

from taskdesk.adapters.event_bus import EventBus
from taskdesk.adapters.events import TaskEvent, dict_to_event, event_to_dict
