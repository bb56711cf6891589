from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

from .log import get_logger

log = get_logger(__name__)

Trigger = Callable[[str], Awaitable[Any]]
ResultCallback = Callable[[str, Any], Any]


class DebouncedIntake:
    """Coalesces rapid URL edits into one trigger call after a quiet period.

    One timer per intake: every submit() cancels the pending timer, and the
    trigger call it may already have started, then schedules a fresh one for
    the newest value. A value equal to the last one triggered is dropped.
    on_result only runs for calls that were not superseded or closed.
    Must be used from inside a running event loop.
    """

    def __init__(
        self,
        trigger: Trigger,
        *,
        quiet_s: float = 0.5,
        on_result: Optional[ResultCallback] = None,
    ):
        self._trigger = trigger
        self.quiet_s = quiet_s
        self._on_result = on_result
        self._task: Optional[asyncio.Task] = None
        self._last_value: Optional[str] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, value: str) -> None:
        if self._closed:
            log.debug("Ignoring input on closed intake: %r", value)
            return
        self._cancel_pending()
        value = (value or "").strip()
        if not value:
            return
        self._task = asyncio.get_running_loop().create_task(self._fire(value))

    async def _fire(self, value: str) -> None:
        await asyncio.sleep(self.quiet_s)
        if value == self._last_value:
            return
        self._last_value = value
        me = asyncio.current_task()
        try:
            result = await self._trigger(value)
        except asyncio.CancelledError:
            # Superseded mid-flight: the same value may be triggered again.
            self._last_value = None
            raise
        except Exception as e:
            self._last_value = None
            log.warning("Intake trigger failed for %r: %s", value, e)
            return
        if self._closed or me is not self._task or self._on_result is None:
            return
        out = self._on_result(value, result)
        if inspect.isawaitable(out):
            await out

    def _cancel_pending(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def drain(self) -> None:
        """Wait until the pending trigger (if any) has finished or been cancelled."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    def close(self) -> None:
        self._closed = True
        self._cancel_pending()

    async def aclose(self) -> None:
        task = self._task
        self.close()
        if task is not None:
            await asyncio.wait({task})

    async def __aenter__(self) -> "DebouncedIntake":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
