# side_effects.py - Post-commit hooks and in-process keyed locks
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Tuple

logger = logging.getLogger("taskboard.side_effects")


class PostCommit:
    """Side effects queued during a mutation and run once it has succeeded.

    Each hook runs isolated: a failure is logged and the remaining hooks still
    run. Nothing raised here reaches the HTTP response.
    """

    def __init__(self, label: str):
        self.label = label
        self._hooks: List[Tuple[str, Callable[..., Awaitable[Any]], tuple, dict]] = []

    def add(self, name: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> None:
        self._hooks.append((name, fn, args, kwargs))

    def __len__(self) -> int:
        return len(self._hooks)

    async def run(self) -> List[str]:
        failed = []
        hooks, self._hooks = self._hooks, []
        for name, fn, args, kwargs in hooks:
            try:
                await fn(*args, **kwargs)
            except Exception as e:
                failed.append(name)
                logger.warning(f"[{self.label}] side effect '{name}' failed: {e}", exc_info=True)
        return failed


class KeyedLocks:
    """One asyncio.Lock per key, dropped when no task holds or waits on it.

    Serialises check-then-act sequences within this process only.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
