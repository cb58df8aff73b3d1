#!/usr/bin/env python3
"""Read the full 16 KiB PROM image from a 14CUX and save it to a file.

The dump takes about 25 seconds on real hardware. Ctrl-C cancels it cleanly:
the partial image is discarded and nothing is written.

Usage:
    python tools/dump_prom.py --port /dev/ttyUSB0 --out tune.bin
    python tools/dump_prom.py --link-factory fakes.fake_link:fake_link_factory --out fake.bin
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).parent.parent))

from cux_lib import ECUController, Notification
from cux_lib.link import load_link_factory
from cux_lib.notifications import wait_for_event

logger = logging.getLogger("dump_prom")

CONNECT_TIMEOUT_S = 5.0


def dump_prom(controller: ECUController, out_path: str, timeout_s: float = 60.0) -> Optional[str]:
    """Connect, dump the PROM and save it.

    Args:
        controller: Controller whose worker is not yet started
        out_path: Destination file
        timeout_s: How long to wait for the dump to finish

    Returns:
        Absolute path of the saved image, or None if the dump did not complete
    """
    listener = controller.hub.listen()
    try:
        controller.connect()
        event = wait_for_event(
            listener,
            [Notification.CONNECTED, Notification.FAILED_TO_CONNECT],
            CONNECT_TIMEOUT_S,
        )
        if event is None or event.kind is not Notification.CONNECTED:
            logger.error(f"Could not connect to {controller.address}")
            return None

        logger.info("Reading PROM image...")
        controller.request_prom_image()
        try:
            event = wait_for_event(
                listener,
                [Notification.PROM_IMAGE_READY, Notification.PROM_IMAGE_READ_FAILED],
                timeout_s,
            )
        except KeyboardInterrupt:
            logger.warning("Interrupted, cancelling PROM read")
            controller.cancel_prom_read()
            return None

        if event is None:
            logger.error(f"PROM read did not finish within {timeout_s}s, cancelling")
            controller.cancel_prom_read()
            return None
        if event.kind is Notification.PROM_IMAGE_READ_FAILED:
            logger.error("PROM read failed")
            return None

        return controller.save_prom_image(out_path)
    finally:
        controller.hub.unlisten(listener)
        controller.shutdown()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Dump the 14CUX PROM image to a file")
    parser.add_argument("--port", default="/dev/ttyUSB0", help="Serial device")
    parser.add_argument("--out", default="14cux_prom.bin", help="Output file")
    parser.add_argument(
        "--link-factory",
        default="fakes.fake_link:fake_link_factory",
        help="Device link factory as module:callable",
    )
    parser.add_argument("--timeout", type=float, default=60.0, help="Dump timeout in seconds")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    controller = ECUController(load_link_factory(args.link_factory), address=args.port)
    saved = dump_prom(controller, args.out, timeout_s=args.timeout)
    if saved is None:
        return 1

    print(f"Saved PROM image to {saved}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
