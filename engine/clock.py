import threading
import time
from datetime import datetime, timezone

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


class Clock:
    """UTC timestamps with microsecond resolution that never repeat or go backwards."""

    def __init__(self, time_source=None):
        self._time_source = time_source or time.time
        self._last_micros = 0
        self._lock = threading.Lock()

    def now_micros(self):
        with self._lock:
            micros = int(round(self._time_source() * 1_000_000))
            if micros <= self._last_micros:
                micros = self._last_micros + 1
            self._last_micros = micros
            return micros

    def now_string(self):
        micros = self.now_micros()
        seconds, remainder = divmod(micros, 1_000_000)
        stamp = datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=remainder)
        return stamp.strftime(TIMESTAMP_FORMAT)


DEFAULT_CLOCK = Clock()


def now_string():
    return DEFAULT_CLOCK.now_string()


def parse_timestamp(value):
    if not value:
        return None
    text = str(value).strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_from_epoch(epoch_seconds):
    stamp = datetime.fromtimestamp(float(epoch_seconds), tz=timezone.utc)
    return stamp.strftime(TIMESTAMP_FORMAT)
