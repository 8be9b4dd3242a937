import time


class SystemClock:
    """Wall clock for record timestamps, monotonic clock for timers."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def monotonic(self) -> float:
        return time.monotonic()
