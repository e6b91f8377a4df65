"""Shared token-bucket bandwidth limiting for copy streams."""

from __future__ import annotations

import threading
import time
from typing import BinaryIO

_MAX_BURST = 1 << 20


class TokenBucket:
    """Thread-safe token bucket measured in bytes; burst is capped at 1 MiB."""

    def __init__(self, bytes_per_sec: int) -> None:
        if bytes_per_sec <= 0:
            raise ValueError("bytes_per_sec must be positive")
        self.rate = float(bytes_per_sec)
        self.max_tokens = float(min(bytes_per_sec, _MAX_BURST))
        self._tokens = self.max_tokens
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def take(self, n: int) -> float:
        """Consume ``n`` tokens; return how many seconds the caller should wait."""
        with self._lock:
            now = time.monotonic()
            self._tokens = min(self._tokens + (now - self._last) * self.rate, self.max_tokens)
            self._last = now
            self._tokens -= n
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate


class ThrottledReader:
    """Read-only stream that holds reads back to the limiter's rate.

    ``timeout`` bounds the whole read in seconds (``TimeoutError`` when it
    runs out during a wait); setting ``cancel`` aborts a wait with
    ``InterruptedError``.
    """

    def __init__(
        self,
        stream: BinaryIO,
        limiter: TokenBucket,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self._stream = stream
        self._limiter = limiter
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._cancel = cancel if cancel is not None else threading.Event()

    def readable(self) -> bool:
        return True

    def read(self, size: int | None = -1) -> bytes:
        data = self._stream.read(-1 if size is None else size)
        if data:
            wait = self._limiter.take(len(data))
            if wait > 0:
                self._pause(wait)
        return data

    def close(self) -> None:
        close = getattr(self._stream, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> ThrottledReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _pause(self, wait: float) -> None:
        if self._deadline is not None:
            remaining = self._deadline - time.monotonic()
            if remaining < wait:
                if self._cancel.wait(max(remaining, 0.0)):
                    raise InterruptedError("throttled read cancelled")
                raise TimeoutError("throttled read exceeded its deadline")
        if self._cancel.wait(wait):
            raise InterruptedError("throttled read cancelled")