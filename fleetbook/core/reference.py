import secrets
import string
import threading
import time
from typing import Callable

_BASE36 = string.digits + string.ascii_uppercase


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _millis() -> int:
    return time.time_ns() // 1_000_000


class ReferenceGenerator:
    """
    Produces reservation reference numbers and opaque tokens.

    Reference format: <PREFIX>-<base36 ms timestamp>-<random hex>.
    The timestamp never goes backwards within one generator. The random
    suffix is finite, so callers must still handle uniqueness violations.
    """

    def __init__(
        self,
        prefix: str = "RES",
        random_bytes: int = 3,
        clock: Callable[[], int] = _millis,
        random_hex: Callable[[int], str] = secrets.token_hex,
    ):
        self.prefix       = prefix
        self.random_bytes = random_bytes
        self._clock       = clock
        self._random_hex  = random_hex
        self._last_ms     = 0
        self._lock        = threading.Lock()

    def _timestamp(self) -> int:
        with self._lock:
            now = max(self._clock(), self._last_ms)
            self._last_ms = now
            return now

    def reservation_reference(self) -> str:
        stamp  = to_base36(self._timestamp())
        suffix = self._random_hex(self.random_bytes).upper()
        return f"{self.prefix}-{stamp}-{suffix}"

    def checkin_token(self) -> str:
        return f"CHK-{secrets.token_urlsafe(16)}"

    def vehicle_qr_code(self) -> str:
        return f"VH-{secrets.token_hex(8).upper()}"
