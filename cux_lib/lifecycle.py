"""Ownership of the device link across the worker hand-off.

The link is built by ``prepare()`` on the worker thread, used only there, and
released by ``teardown()`` on the same thread just before it exits.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from cux_lib.errors import LifecycleError
from cux_lib.link import DeviceLink, LinkFactory, safe_read
from cux_lib.models import LastKnownValues, LifecycleState, Notification
from cux_lib.notifications import NotificationHub
from cux_lib.transfer import CancellableTransfer

logger = logging.getLogger(__name__)


@dataclass
class ConnectionState:
    """Per-session state of the polling worker.

    ``stop_polling`` and ``shutdown`` are the only fields set from the
    interactive thread; everything else belongs to the worker.

    Attributes:
        link: Device link, non-None between prepare() and teardown().
        stop_polling: Graceful stop request; polling resumes on the next start.
        shutdown: Terminal request; the worker exits once a cycle observes it.
        cycle_count: Number of completed poll cycles.
        last_mid_read: Clock value of the last successful mid-tier run.
        last_low_read: Clock value of the last successful low-tier run.
        poll_armed: True while a poll cycle is queued or running.
    """

    link: Optional[DeviceLink] = None
    stop_polling: threading.Event = field(default_factory=threading.Event)
    shutdown: threading.Event = field(default_factory=threading.Event)
    cycle_count: int = 0
    last_mid_read: Optional[float] = None
    last_low_read: Optional[float] = None
    poll_armed: bool = False


class ConnectionManager:
    """Drives the connection lifecycle of one device link.

    UNINITIALIZED -> PREPARED -> CONNECTED <-> POLLING -> DISCONNECTED -> TORN_DOWN.
    All methods except ``state`` and ``request_stop`` must run on the worker.
    """

    def __init__(
        self,
        link_factory: LinkFactory,
        hub: NotificationHub,
        values: LastKnownValues,
        transfer: CancellableTransfer,
    ) -> None:
        self._link_factory = link_factory
        self._hub = hub
        self._values = values
        self._transfer = transfer
        self._state = LifecycleState.UNINITIALIZED
        self.session = ConnectionState()

    @property
    def state(self) -> LifecycleState:
        """Current lifecycle state."""
        return self._state

    @property
    def link(self) -> Optional[DeviceLink]:
        return self.session.link

    def prepare(self) -> None:
        """Construct the device link if it does not exist yet.

        Raises:
            LifecycleError: If the manager has already been torn down
        """
        if self._state == LifecycleState.TORN_DOWN:
            raise LifecycleError("Cannot prepare a torn-down connection")

        if self.session.link is None:
            self.session.link = self._link_factory()
            logger.info(f"Device link created (thread {threading.get_ident()})")

        if self._state == LifecycleState.UNINITIALIZED:
            self._state = LifecycleState.PREPARED

    def is_connected(self) -> bool:
        """True if the link exists and reports an open transport."""
        link = self.session.link
        return link is not None and link.is_connected()

    def connect(self, address: str) -> bool:
        """Open the link and publish the tune revision.

        Emits CONNECTED (then TUNE_REVISION_READY when the revision can be
        read) on success, FAILED_TO_CONNECT with the address otherwise. A link
        that is already open is left alone and nothing is emitted.

        Returns:
            True if the transport is open
        """
        link = self.session.link
        if link is None:
            raise LifecycleError("connect() called before prepare()")

        if link.is_connected():
            logger.debug("connect() on an open link, nothing to do")
            return True

        logger.info(f"Connecting to ECU on {address}...")
        if not link.connect(address):
            logger.warning(f"Failed to open {address}")
            self._hub.emit(Notification.FAILED_TO_CONNECT, address)
            return False

        self._state = LifecycleState.CONNECTED
        self._hub.emit(Notification.CONNECTED)

        revision, ok = safe_read(link.read_tune_revision)
        if ok:
            self._values.tune_revision = revision
            logger.info(f"Connected. Tune revision: {revision}")
            self._hub.emit(Notification.TUNE_REVISION_READY, revision)
        else:
            logger.info("Connected. Tune revision unavailable")

        return True

    def mark_polling(self) -> None:
        self._state = LifecycleState.POLLING

    def disconnect_link(self) -> None:
        """Close the link if it is open and publish DISCONNECTED."""
        link = self.session.link
        if link is not None and link.is_connected():
            link.disconnect()
            logger.info("Disconnected from ECU")

        if self._state != LifecycleState.TORN_DOWN:
            self._state = LifecycleState.DISCONNECTED
        self._hub.emit(Notification.DISCONNECTED)

    def request_stop(self) -> None:
        """Ask the poll loop to stop; safe from any thread."""
        self.session.stop_polling.set()

    def disconnect_and_reset(self) -> None:
        """Drop data that belongs to the current session.

        The caller sets the stop flag before queuing this, so a start queued
        after it is not undone here. The released PROM buffer and cleared fuel
        maps can never be mistaken for data from a later session. A running
        poll loop closes the link on its next cycle; with no loop armed the
        link is closed here.
        """
        self._transfer.release()
        self._values.fuel_maps = {}
        logger.info("Session reset: PROM image released, fuel maps cleared")

        if not self.session.poll_armed and self.is_connected():
            self.disconnect_link()

    def teardown(self) -> None:
        """Release the device link. Terminal."""
        link = self.session.link
        if link is not None:
            if link.is_connected():
                link.disconnect()
            self.session.link = None
        self.session.poll_armed = False
        self._state = LifecycleState.TORN_DOWN
        logger.info("Device link released")
