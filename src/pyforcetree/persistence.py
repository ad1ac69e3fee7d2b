"""
Best-effort persistence of node positions.

Positions are loaded at most once per session and saved through a single
writer task, so a later save never overtakes an earlier one. Saves can be
debounced so that a burst of frames results in one write of the latest
snapshot. Backend failures are logged and swallowed: persistence never
decides whether a layout is correct.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol
import asyncio
import contextlib
import logging

from .positions import Position, _coerce

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 1.0


class PositionBackend(Protocol):
    """External store for per-user, per-tree node positions."""

    async def load_positions(self, tree_id: Any, user_id: Any) -> Optional[Mapping[Any, Any]]:
        ...

    async def save_positions(self, tree_id: Any, user_id: Any, positions: dict[Any, dict]) -> None:
        ...


class PositionPersistence:
    """
    Load-once, serialized-save adapter around a PositionBackend.

    Must be used from within a running asyncio event loop.

    Args:
        backend: The external store
        tree_id: Tree whose positions are stored
        user_id: Owner of the stored positions
        debounce: Seconds to coalesce schedule_save() calls
    """

    def __init__(
        self,
        backend: PositionBackend,
        tree_id: Any,
        user_id: Any,
        debounce: float = DEFAULT_DEBOUNCE
    ):
        self.backend = backend
        self.tree_id = tree_id
        self.user_id = user_id
        self.debounce = debounce

        self._loaded = False
        self._load_future: Optional[asyncio.Future] = None
        self._queue: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending: Optional[dict] = None

    @property
    def enabled(self) -> bool:
        return bool(self.tree_id) and bool(self.user_id)

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> dict[Any, Position]:
        """
        Load saved positions, at most once per session.

        Concurrent and repeated calls share the first result.

        Returns:
            Dict node id -> (x, y); empty when nothing is stored or loading failed
        """
        if self._load_future is None:
            self._load_future = asyncio.ensure_future(self._load())
        return dict(await asyncio.shield(self._load_future))

    async def _load(self) -> dict[Any, Position]:
        positions: dict[Any, Position] = {}
        if not self.enabled:
            self._loaded = True
            return positions

        try:
            saved = await self.backend.load_positions(self.tree_id, self.user_id)
        except Exception as exc:
            logger.warning("position load failed for tree %r: %s", self.tree_id, exc)
            saved = None
        finally:
            self._loaded = True

        if saved:
            for node_id, value in saved.items():
                p = _coerce(value)
                if p is not None:
                    positions[node_id] = p
            logger.debug("loaded %d positions for tree %r", len(positions), self.tree_id)
        return positions

    def schedule_save(self, positions: Mapping[Any, Any]) -> None:
        """
        Debounced save: only the latest snapshot within the window is written.

        Args:
            positions: Dict node id -> position
        """
        if not self._can_save(positions):
            return

        self._pending = dict(positions)
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce, self._fire_pending)

    def _fire_pending(self) -> None:
        self._timer = None
        pending, self._pending = self._pending, None
        if pending is not None:
            self._enqueue(pending)

    def save_now(self, positions: Mapping[Any, Any]) -> asyncio.Future:
        """
        Queue a save immediately, behind any save already queued.

        Args:
            positions: Dict node id -> position

        Returns:
            Future resolved once this save has been attempted
        """
        if not self._can_save(positions):
            future = asyncio.get_running_loop().create_future()
            future.set_result(None)
            return future
        return self._enqueue(dict(positions))

    def _can_save(self, positions: Mapping[Any, Any]) -> bool:
        if not self.enabled:
            return False
        if not self._loaded:
            logger.debug("skipping save before positions were loaded")
            return False
        return bool(positions)

    def _enqueue(self, positions: dict) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._drain())

        future = loop.create_future()
        self._queue.put_nowait((positions, future))
        return future

    async def _drain(self) -> None:
        while True:
            positions, future = await self._queue.get()
            try:
                payload = {}
                for node_id, value in positions.items():
                    p = _coerce(value)
                    if p is not None:
                        payload[node_id] = {'x': p[0], 'y': p[1]}
                await self.backend.save_positions(self.tree_id, self.user_id, payload)
            except Exception as exc:
                logger.warning("position save failed for tree %r: %s", self.tree_id, exc)
            finally:
                if not future.done():
                    future.set_result(None)
                self._queue.task_done()

    async def flush(self) -> None:
        """Write any debounced snapshot now and wait for the queue to drain."""
        if self._timer is not None:
            self._timer.cancel()
            self._fire_pending()
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """
        Drop pending debounced work and stop the writer task.

        Saves still waiting in the queue are not written; their futures
        are cancelled.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None
        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                future.cancel()
                self._queue.task_done()
        self._queue = None
