from __future__ import annotations

import re
import threading
from collections import deque


_MARKER = "[... {n} earlier characters truncated ...]\n"
_MARKER_RE = re.compile(r"\A\[\.\.\. (\d+) earlier characters truncated \.\.\.\]\n")


class LogBuffer:
    """Bounded text buffer for sandbox output.

    Keeps the newest `max_chars` characters. Older text is dropped first and the
    rendered log is prefixed with a marker saying how much was cut.
    Safe to append from a reader thread while another thread renders.
    """

    def __init__(self, max_chars: int, *, dropped: int = 0) -> None:
        if max_chars < 1:
            raise ValueError("max_chars must be >= 1")
        self.max_chars = int(max_chars)
        self._chunks: deque[str] = deque()
        self._size = 0
        self._dropped = max(0, int(dropped))
        self._lock = threading.Lock()

    @property
    def dropped_chars(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        return self._size

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            if len(text) >= self.max_chars:
                cut = len(text) - self.max_chars
                self._dropped += self._size + cut
                self._chunks.clear()
                self._chunks.append(text[cut:])
                self._size = self.max_chars
                return

            self._chunks.append(text)
            self._size += len(text)
            while self._size > self.max_chars:
                overflow = self._size - self.max_chars
                head = self._chunks[0]
                if len(head) <= overflow:
                    self._chunks.popleft()
                    self._size -= len(head)
                    self._dropped += len(head)
                else:
                    self._chunks[0] = head[overflow:]
                    self._size -= overflow
                    self._dropped += overflow

    def text(self) -> str:
        with self._lock:
            body = "".join(self._chunks)
            if self._dropped:
                return _MARKER.format(n=self._dropped) + body
            return body


def truncate_log(text: str, max_chars: int) -> str:
    """Apply the same oldest-first truncation to an already captured string.

    A marker left by an earlier truncation is not counted as output: its count
    carries over, so the result reports everything dropped along the way.
    """
    text = text or ""
    dropped = 0
    m = _MARKER_RE.match(text)
    if m is not None:
        dropped = int(m.group(1))
        text = text[m.end():]
    buf = LogBuffer(max_chars, dropped=dropped)
    buf.append(text)
    return buf.text()
