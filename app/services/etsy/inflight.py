"""Coalescing of concurrent identical async operations."""

import asyncio
from typing import Any, Awaitable, Callable, Hashable


class InFlight:
    """Runs at most one operation per key at a time.

    Callers arriving while an operation for the same key is running await
    that operation's result instead of starting a second one.
    """

    def __init__(self) -> None:
        self._pending: dict[Hashable, asyncio.Future] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def run(self, key: Hashable, operation: Callable[[], Awaitable[Any]]) -> Any:
        # Lookup and insert happen without an await in between, so the
        # check-and-insert is atomic on the event loop.
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            result = await operation()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Retrieve it so a result nobody else awaited is not reported
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._pending.pop(key, None)
