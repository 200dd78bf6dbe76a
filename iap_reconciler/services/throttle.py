"""Throttle gate for verification server queries.

Modulates how often the reconciler pulls state from the verification server.
The check and the refresh are not serialized: two concurrent callers may both
see a stale mark and both query the server.
"""

import time
from typing import Callable, Optional

from iap_reconciler.logging_config import get_logger
from iap_reconciler.repositories.preferences_store import PreferencesStore

logger = get_logger(__name__)

LAST_INVOCATION_KEY = "lastInvocationTime"
DEFAULT_DEAD_BAND_MILLIS = 2 * 60 * 60 * 1000  # two hours


def current_time_millis() -> int:
    return int(time.time() * 1000)


class ThrottleGate:
    """Persisted timestamp gate.

    Args:
        preferences: Store holding the ``lastInvocationTime`` mark
        dead_band_millis: Minimum interval between gated calls
        clock: Callable returning Unix millis (defaults to wall clock)
    """

    def __init__(
        self,
        preferences: PreferencesStore,
        dead_band_millis: int = DEFAULT_DEAD_BAND_MILLIS,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._preferences = preferences
        self._dead_band_millis = dead_band_millis
        self._clock = clock or current_time_millis

    @property
    def dead_band_millis(self) -> int:
        return self._dead_band_millis

    @property
    def last_invocation_time_millis(self) -> int:
        return self._preferences.get_int(LAST_INVOCATION_KEY, 0)

    def is_stale(self, now_millis: Optional[int] = None) -> bool:
        """True when the last mark is older than the dead band."""
        now = now_millis if now_millis is not None else self._clock()
        stale = self.last_invocation_time_millis + self._dead_band_millis < now
        logger.debug(
            "throttle_checked",
            stale=stale,
            last_invocation_time_millis=self.last_invocation_time_millis,
            now_millis=now,
        )
        return stale

    def refresh(self, now_millis: Optional[int] = None) -> int:
        """Persist ``now`` as the new mark.

        Returns:
            The mark written
        """
        now = now_millis if now_millis is not None else self._clock()
        self._preferences.put(LAST_INVOCATION_KEY, now)
        logger.info("throttle_refreshed", last_invocation_time_millis=now)
        return now
