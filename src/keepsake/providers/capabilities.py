"""Process-wide memory of what each provider/model pair accepts."""

from __future__ import annotations

import logging
from collections import OrderedDict
from threading import Lock

logger = logging.getLogger(__name__)

# Error fragments that mean "this model rejects a custom temperature"
_TEMPERATURE_MARKERS = ("temperature", "does not support")


def rejects_temperature(error: BaseException) -> bool:
    """True when *error* reads like a refused temperature parameter."""
    message = str(error).lower()
    return any(marker in message for marker in _TEMPERATURE_MARKERS)


class ProviderCapabilities:
    """Bounded set of ``provider:model`` keys that refuse a custom temperature.

    Entries live for the process lifetime; once ``max_entries`` is
    reached the least recently used key is forgotten.
    """

    def __init__(self, max_entries: int = 256) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._no_temperature: OrderedDict[str, None] = OrderedDict()
        self._lock = Lock()

    def supports_temperature(self, key: str) -> bool:
        with self._lock:
            if key in self._no_temperature:
                self._no_temperature.move_to_end(key)
                return False
            return True

    def mark_no_temperature(self, key: str) -> None:
        with self._lock:
            if key in self._no_temperature:
                self._no_temperature.move_to_end(key)
                return
            self._no_temperature[key] = None
            if len(self._no_temperature) > self._max_entries:
                self._no_temperature.popitem(last=False)
        logger.info("Provider %s does not accept a custom temperature", key)

    def clear(self) -> None:
        with self._lock:
            self._no_temperature.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._no_temperature)


# Shared by every classifier that is not handed its own instance
DEFAULT_CAPABILITIES = ProviderCapabilities()
