"""
app/core/errors.py
Error kinds surfaced by the cache layer.
  • FetchError        → GitHub answered non-2xx or was unreachable
  • CacheDecodeError  → a stored record exists but cannot be decoded
  • CacheStoreError   → the backend itself failed
A key that was never populated is NOT an error: stores return None.
"""

from typing import Optional


class CacheError(Exception):
    """Base class for everything the cache layer raises."""


class FetchError(CacheError):
    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        super().__init__(f"{status or 'transport'}: {message}")


class CacheDecodeError(CacheError):
    def __init__(self, key: str, message: str = "stored record is unreadable"):
        self.key = key
        super().__init__(f"{key}: {message}")


class CacheStoreError(CacheError):
    pass
