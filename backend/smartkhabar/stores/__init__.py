"""
Durable stores consumed by the engine.

The engine only depends on the abstract interfaces in base.py; the SQL
and in-memory implementations are interchangeable.
"""
from smartkhabar.stores.base import InteractionStore, PreferenceStore
from smartkhabar.stores.memory import InMemoryInteractionStore, InMemoryPreferenceStore
from smartkhabar.stores.sql import SQLInteractionStore, SQLPreferenceStore

__all__ = [
    "InteractionStore",
    "PreferenceStore",
    "InMemoryInteractionStore",
    "InMemoryPreferenceStore",
    "SQLInteractionStore",
    "SQLPreferenceStore",
]
