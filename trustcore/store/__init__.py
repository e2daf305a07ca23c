"""Shared keyed store backends."""

from trustcore.store.base import KeyedStore, now_ms
from trustcore.store.dynamodb import DynamoDBStore
from trustcore.store.fallback import FallbackStore
from trustcore.store.memory import ExpirySweeper, MemoryStore

__all__ = [
    "DynamoDBStore",
    "ExpirySweeper",
    "FallbackStore",
    "KeyedStore",
    "MemoryStore",
    "now_ms",
]
