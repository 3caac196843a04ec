"""Storage backends for token buckets."""

from tokenbucket.storage.base import MAX_KEY_LENGTH, BucketKey, Storage, normalize_key
from tokenbucket.storage.in_memory import InMemoryStorage

__all__ = [
    "MAX_KEY_LENGTH",
    "BucketKey",
    "Storage",
    "normalize_key",
    "InMemoryStorage",
]
