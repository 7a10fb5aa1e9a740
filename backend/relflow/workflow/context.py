"""Per-attempt context handed to every node body."""

from __future__ import annotations

import asyncio
from typing import Callable

from ..run_logging import task_logger

LogSink = Callable[[str], None]


class TaskContext:
    """Cancellation, logging and retry control for one node attempt.

    Synchronous bodies run in a worker thread; everything here is safe to call
    from that thread as well as from the event loop.
    """

    def __init__(
        self,
        run_id: str,
        node: str,
        attempt: int,
        *,
        cancel_event: asyncio.Event | None = None,
        log_sink: LogSink | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        on_disable_retries: Callable[[], None] | None = None,
    ):
        self.run_id = run_id
        self.node = node
        self.attempt = attempt
        self.logger = task_logger(run_id, node)
        self._cancel_event = cancel_event or asyncio.Event()
        self._log_sink = log_sink
        self._loop = loop
        self._retries_disabled = False
        self._on_disable_retries = on_disable_retries

    def __repr__(self) -> str:
        return f"TaskContext(run_id={self.run_id!r}, node={self.node!r}, attempt={self.attempt})"

    @property
    def retries_disabled(self) -> bool:
        return self._retries_disabled

    def disable_retries(self) -> None:
        """Fail this node terminally if the current attempt fails.

        Call before a side effect that must not be repeated automatically.
        The flag is written to the node record as soon as it is set.
        """
        if not self._retries_disabled:
            self._retries_disabled = True
            self.logger.info("automatic retries disabled attempt=%s", self.attempt)
            if self._on_disable_retries is not None:
                self._on_disable_retries()

    def printf(self, message: str, *args: object) -> None:
        """Log a progress line for this node and forward it to the listener."""
        text = message % args if args else message
        self.logger.info(text)
        if self._log_sink is None:
            return
        if self._loop is None or _running_loop() is self._loop:
            self._log_sink(text)
        else:
            self._loop.call_soon_threadsafe(self._log_sink, text)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise CancelledError once the run has been cancelled."""
        if self._cancel_event.is_set():
            raise asyncio.CancelledError(f"run {self.run_id} cancelled")

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
