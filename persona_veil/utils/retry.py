import asyncio
import sqlite3
from typing import Any, Awaitable, Callable

from persona_veil.errors import StorageError


def _is_locked(exc: sqlite3.OperationalError) -> bool:
    return "locked" in str(exc).lower() or "busy" in str(exc).lower()


async def storage_call_with_retry(
    fn: Callable[..., Awaitable[Any]], *args: Any, max_retries: int = 4, **kwargs: Any
) -> Any:
    """Await a storage coroutine with exponential backoff while SQLite reports a lock.

    Waits 0.05, 0.1, 0.2 seconds between retries, then raises StorageError.
    Other sqlite errors are wrapped in StorageError immediately.
    """
    for attempt in range(max_retries):
        try:
            return await fn(*args, **kwargs)
        except sqlite3.OperationalError as exc:
            if not _is_locked(exc):
                raise StorageError("Storage operation failed") from exc
            if attempt == max_retries - 1:
                raise StorageError("Storage is busy") from exc
            await asyncio.sleep(0.05 * (2 ** attempt))
        except sqlite3.DatabaseError as exc:
            raise StorageError("Storage operation failed") from exc
