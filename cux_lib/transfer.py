"""Cancellable full-PROM dump.

The dump is a single slow request (about 25 seconds over the 14CUX link). It
runs on the worker while the interactive thread may cancel it at any time.
"""

import logging
import threading
from pathlib import Path
from typing import Optional, Union

from cux_lib import protocol
from cux_lib.errors import CUXError, LinkIOError
from cux_lib.link import DeviceLink
from cux_lib.models import Notification
from cux_lib.notifications import NotificationHub

logger = logging.getLogger(__name__)


class CancellableTransfer:
    """One-shot bulk read with its own cancel flag.

    The cancel flag is separate from the poll loop's stop flag. The image is
    handed over only when the link reports success, the buffer holds exactly
    ``size`` bytes, and no cancel was requested.
    """

    def __init__(self, hub: NotificationHub, size: int = protocol.PROM_SIZE) -> None:
        self._hub = hub
        self._size = size
        self._cancel = threading.Event()
        self._buffer: Optional[bytearray] = None
        self._image: Optional[bytes] = None

    @property
    def size(self) -> int:
        return self._size

    @property
    def image(self) -> Optional[bytes]:
        """Last completed image, or None."""
        return self._image

    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def request_cancel(self, link: Optional[DeviceLink]) -> None:
        """Cancel the in-flight (or next) transfer. Safe from any thread."""
        self._cancel.set()
        if link is not None:
            link.cancel_read()
        logger.info("PROM read cancel requested")

    def run(self, link: DeviceLink) -> bool:
        """Perform the dump on the worker thread.

        Emits PROM_IMAGE_READY with the image bytes on completion or
        PROM_IMAGE_READ_FAILED on a transport failure; neither is emitted when
        the transfer was cancelled. The cancel flag is cleared afterwards.

        Returns:
            True if a complete image was handed over
        """
        if self._cancel.is_set():
            logger.warning("PROM read cancelled before it started")
            self._cancel.clear()
            return False

        if self._buffer is None or len(self._buffer) != self._size:
            self._buffer = bytearray(self._size)

        logger.info(f"Reading {self._size}-byte PROM image...")
        try:
            ok = link.dump_rom(self._buffer)
        except LinkIOError as e:
            logger.error(f"PROM read raised: {e}")
            ok = False

        complete = ok and len(self._buffer) == self._size
        cancelled = self._cancel.is_set()
        self._cancel.clear()

        if cancelled:
            logger.warning("PROM read cancelled, discarding partial image")
            return False

        if not complete:
            logger.error(
                f"PROM read failed (ok={ok}, got {len(self._buffer)}/{self._size} bytes)"
            )
            self._hub.emit(Notification.PROM_IMAGE_READ_FAILED)
            return False

        self._image = bytes(self._buffer)
        logger.info("PROM image read complete")
        self._hub.emit(Notification.PROM_IMAGE_READY, self._image)
        return True

    def release(self) -> None:
        """Drop the transfer buffer and any completed image."""
        self._buffer = None
        self._image = None


def save_image(image: bytes, path: Union[str, Path]) -> str:
    """Write a PROM image verbatim: no header, no checksum.

    Args:
        image: Complete PROM image
        path: Destination file

    Returns:
        Absolute path to the written file

    Raises:
        CUXError: If the image is not exactly PROM_SIZE bytes
    """
    if len(image) != protocol.PROM_SIZE:
        raise CUXError(
            f"PROM image must be {protocol.PROM_SIZE} bytes, got {len(image)}"
        )

    out = Path(path)
    written = out.write_bytes(image)
    if written != protocol.PROM_SIZE:
        raise CUXError(f"Short write of PROM image to {out}: {written} bytes")

    abs_path = str(out.resolve())
    logger.info(f"Saved PROM image to {abs_path}")
    return abs_path
