"""Thread-safe registry of which sample kinds the scheduler should poll."""

import logging
import threading
from typing import Dict, List, Mapping, Optional, Union

from cux_lib.errors import InvalidCommandValue
from cux_lib.models import SampleKind

logger = logging.getLogger(__name__)

SampleKey = Union[SampleKind, str]


def _coerce_kind(key: SampleKey) -> SampleKind:
    """Accept a SampleKind, its value ("road_speed") or its name ("ROAD_SPEED")."""
    if isinstance(key, SampleKind):
        return key
    try:
        return SampleKind(key)
    except ValueError:
        pass
    try:
        return SampleKind[str(key).upper()]
    except KeyError:
        raise InvalidCommandValue(f"Unknown sample kind: {key!r}") from None


class SampleRegistry:
    """Mapping of SampleKind -> enabled, read by the worker every cycle.

    Writers update one entry at a time under the lock. The dictionary is never
    swapped for a new one, so a scheduler reading mid-update sees each field
    either fully old or fully new.
    """

    def __init__(self, defaults: Optional[Mapping[SampleKey, bool]] = None) -> None:
        """Initialize registry with every kind enabled.

        Args:
            defaults: Optional overrides applied on top of "all enabled".
        """
        self._lock = threading.Lock()
        self._enabled: Dict[SampleKind, bool] = {kind: True for kind in SampleKind}
        if defaults:
            self.update(defaults)

    def is_enabled(self, kind: SampleKind) -> bool:
        with self._lock:
            return self._enabled[kind]

    def set_enabled(self, kind: SampleKey, enabled: bool) -> None:
        """Enable or disable a single sample kind (thread-safe)."""
        sample_kind = _coerce_kind(kind)
        with self._lock:
            self._enabled[sample_kind] = bool(enabled)
        logger.debug(f"Sample {sample_kind.value} {'enabled' if enabled else 'disabled'}")

    def update(self, samples: Mapping[SampleKey, bool]) -> None:
        """Apply several entries, one field at a time.

        Every key is validated before any entry is written, so an unknown key
        leaves the registry untouched.

        Raises:
            InvalidCommandValue: If a key is not a known sample kind
        """
        entries = [(_coerce_kind(key), bool(value)) for key, value in samples.items()]
        for kind, enabled in entries:
            with self._lock:
                self._enabled[kind] = enabled
        logger.info(f"Updated {len(entries)} sample enablement entries")

    def snapshot(self) -> Dict[SampleKind, bool]:
        """Get a copy of the current enablement map."""
        with self._lock:
            return dict(self._enabled)

    def enabled_kinds(self) -> List[SampleKind]:
        """Sample kinds that are currently enabled, in declaration order."""
        snapshot = self.snapshot()
        return [kind for kind in SampleKind if snapshot[kind]]
