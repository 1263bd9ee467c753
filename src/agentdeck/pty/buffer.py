"""Bounded scrollback for PTY sessions."""

from __future__ import annotations


class ScrollbackBuffer:
    """Terminal history, bounded in characters.

    Output is stored verbatim (escape sequences included) so a late
    subscriber can replay it into a terminal emulator. When the stored
    text grows past ``max_chars`` it is cut down to the most recent
    ``keep_chars``; trimming in chunks keeps appends cheap.

    Mutated only from the event loop thread, so no locking is needed.
    """

    def __init__(self, max_chars: int = 50_000, keep_chars: int = 40_000) -> None:
        if keep_chars > max_chars:
            raise ValueError("keep_chars must not exceed max_chars")
        self._max_chars = max_chars
        self._keep_chars = keep_chars
        self._text = ""

    def append(self, text: str) -> None:
        if not text:
            return
        self._text += text
        if len(self._text) > self._max_chars:
            self._text = self._text[-self._keep_chars :]

    def read_all(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)
