"""Per-session partial-line buffering for raw process output."""
from __future__ import annotations


class LineBuffer:
    """Accumulates output chunks and yields complete lines.

    A trailing partial line is held until the next chunk (or ``flush``
    at end of stream) completes it. Lines are decoded as UTF-8 with
    replacement so a split multi-byte sequence never raises.
    """

    def __init__(self) -> None:
        self._pending = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        if not chunk:
            return []
        self._pending.extend(chunk)
        if b"\n" not in chunk:
            return []
        *complete, rest = bytes(self._pending).split(b"\n")
        self._pending = bytearray(rest)
        return [self._decode(raw) for raw in complete]

    def flush(self) -> list[str]:
        """Return the held partial line (if any) at end of stream."""
        if not self._pending:
            return []
        raw = bytes(self._pending)
        self._pending.clear()
        return [self._decode(raw)]

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.rstrip(b"\r").decode("utf-8", errors="replace")
