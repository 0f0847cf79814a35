"""
Real-time fanout of chat events to connected viewers.

A viewer is one live connection (a browser tab's WebSocket). Each viewer
watches at most one contact thread, plus the conversation-list channel it
joins on connect. Publishing an event for a contact reaches every viewer
watching that thread or the list, exactly once per viewer.

Delivery is best effort and at most once: there is no replay, and a viewer
that is gone or too slow to drain its queue simply misses events. Clients
recover by re-fetching state over HTTP after a reconnect.

Every viewer has a FIFO queue drained by a single writer task, and
publishing only enqueues, so events reach a viewer in the order they were
published without a slow socket ever blocking a publisher.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

from chatrelay.domain import Event
from chatrelay.errors import NotFoundError
from chatrelay.metrics import connected_viewers, record_fanout

logger = logging.getLogger(__name__)

WS_INTERNAL_ERROR = 1011


class Connection(Protocol):
    """Anything that can push a JSON frame to a viewer (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class _Viewer:
    def __init__(self, viewer_id: str, connection: Connection, queue_size: int):
        self.viewer_id = viewer_id
        self.connection = connection
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.thread: Optional[str] = None
        self.watching_list = True
        self.writer: Optional[asyncio.Task] = None


class FanoutHub:
    """
    Subscription registry and per-viewer delivery.

    Constructed once by the application and handed to whatever needs to
    publish; there is no module-level instance.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._viewers: dict[str, _Viewer] = {}
        self._thread_watchers: dict[str, set[str]] = {}
        self._list_watchers: set[str] = set()

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def connect(self, viewer_id: str, connection: Connection) -> None:
        """
        Register a live connection. Must be called from a running event loop.

        A second connect for the same viewer id replaces the first connection.
        """
        if viewer_id in self._viewers:
            logger.info(f"Viewer {viewer_id} reconnected, dropping previous connection")
            self.disconnect(viewer_id)

        viewer = _Viewer(viewer_id, connection, self._queue_size)
        viewer.writer = asyncio.get_running_loop().create_task(
            self._drain(viewer), name=f"fanout-writer-{viewer_id}"
        )
        self._viewers[viewer_id] = viewer
        self._list_watchers.add(viewer_id)
        connected_viewers.set(len(self._viewers))
        logger.info(f"Viewer connected: {viewer_id}")

    def disconnect(self, viewer_id: str, connection: Optional[Connection] = None) -> None:
        """
        Synchronously drop a viewer from every subscription and stop its writer.

        With ``connection`` the viewer is only dropped while that connection is
        still the registered one, so a socket closing after a reconnect leaves
        the newer connection alone.
        """
        viewer = self._viewers.get(viewer_id)
        if viewer is None:
            return
        if connection is not None and viewer.connection is not connection:
            return
        del self._viewers[viewer_id]
        self._leave_thread(viewer)
        self._list_watchers.discard(viewer_id)
        if viewer.writer is not None and viewer.writer is not asyncio.current_task():
            viewer.writer.cancel()
        connected_viewers.set(len(self._viewers))
        logger.info(f"Viewer disconnected: {viewer_id}")

    def is_connected(self, viewer_id: str) -> bool:
        return viewer_id in self._viewers

    def __len__(self) -> int:
        return len(self._viewers)

    async def close(self) -> None:
        """Disconnect everyone and wait for the writers to finish."""
        writers = [v.writer for v in self._viewers.values() if v.writer is not None]
        for viewer_id in list(self._viewers):
            self.disconnect(viewer_id)
        if writers:
            await asyncio.gather(*writers, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, viewer_id: str, contact_id: str) -> Optional[str]:
        """
        Watch one contact thread, leaving the previously watched one.

        Returns:
            The contact id the viewer was watching before, if any

        Raises:
            NotFoundError: the viewer is not connected
        """
        viewer = self._viewer(viewer_id)
        previous = viewer.thread
        if previous == contact_id:
            return previous
        self._leave_thread(viewer)
        viewer.thread = contact_id
        self._thread_watchers.setdefault(contact_id, set()).add(viewer_id)
        logger.debug(f"Viewer {viewer_id} watching thread {contact_id}")
        return previous

    def unsubscribe(self, viewer_id: str, contact_id: str) -> bool:
        """Stop watching ``contact_id``; False if the viewer was not watching it."""
        viewer = self._viewer(viewer_id)
        if viewer.thread != contact_id:
            return False
        self._leave_thread(viewer)
        return True

    def watch_list(self, viewer_id: str, enabled: bool = True) -> None:
        viewer = self._viewer(viewer_id)
        viewer.watching_list = enabled
        if enabled:
            self._list_watchers.add(viewer_id)
        else:
            self._list_watchers.discard(viewer_id)

    def thread_of(self, viewer_id: str) -> Optional[str]:
        viewer = self._viewers.get(viewer_id)
        return viewer.thread if viewer else None

    def watchers(self, contact_id: str) -> set[str]:
        """Viewers that receive events for ``contact_id``."""
        return self._thread_watchers.get(contact_id, set()) | self._list_watchers

    def _viewer(self, viewer_id: str) -> _Viewer:
        viewer = self._viewers.get(viewer_id)
        if viewer is None:
            raise NotFoundError(f"Viewer {viewer_id} is not connected", details={"viewer_id": viewer_id})
        return viewer

    def _leave_thread(self, viewer: _Viewer) -> None:
        if viewer.thread is None:
            return
        watchers = self._thread_watchers.get(viewer.thread)
        if watchers is not None:
            watchers.discard(viewer.viewer_id)
            if not watchers:
                del self._thread_watchers[viewer.thread]
        viewer.thread = None

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def publish(self, event: Event) -> int:
        """
        Queue ``event`` for every viewer watching its contact or the list.

        Returns:
            Number of viewers the event was queued for
        """
        payload = event.to_wire()
        queued = 0
        for viewer_id in self.watchers(event.contact_id):
            if self._enqueue(viewer_id, payload):
                queued += 1
        logger.debug(f"Published {event.type} for {event.contact_id} to {queued} viewers")
        return queued

    def send_to(self, viewer_id: str, payload: dict[str, Any]) -> bool:
        """Queue a frame for one viewer, in order with its events."""
        return self._enqueue(viewer_id, payload)

    def _enqueue(self, viewer_id: str, payload: dict[str, Any]) -> bool:
        viewer = self._viewers.get(viewer_id)
        if viewer is None:
            record_fanout("dropped")
            return False
        try:
            viewer.queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Viewer {viewer_id} is not keeping up, dropping {payload.get('type')}")
            record_fanout("dropped")
            return False
        record_fanout("queued")
        return True

    async def _drain(self, viewer: _Viewer) -> None:
        while True:
            payload = await viewer.queue.get()
            try:
                await viewer.connection.send_json(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.info(f"Push to viewer {viewer.viewer_id} failed ({e}), disconnecting")
                if self._viewers.get(viewer.viewer_id) is viewer:
                    self.disconnect(viewer.viewer_id)
                await self._close(viewer)
                return

    async def _close(self, viewer: _Viewer) -> None:
        # Ends the session's receive loop; the socket may already be gone
        try:
            await viewer.connection.close(code=WS_INTERNAL_ERROR)
        except Exception as e:
            logger.debug(f"Closing viewer {viewer.viewer_id} failed: {e}")
