"""Incremental reads of append-only files."""

from __future__ import annotations

import json
from dataclasses import dataclass

import aiofiles
import aiofiles.os


async def file_size(path: str) -> int:
    st = await aiofiles.os.stat(path)
    return st.st_size


async def read_range(path: str, start: int, end: int) -> bytes:
    """Read bytes ``[start, end)``. May return fewer if the file shrank."""
    if end <= start:
        return b""
    async with aiofiles.open(path, "rb") as f:
        await f.seek(start)
        return await f.read(end - start)


@dataclass
class LineSplitter:
    """Splits a byte stream into complete lines, holding back the tail.

    Works on bytes so a multi-byte character cut by a read boundary is
    reassembled before decoding.
    """

    remainder: bytes = b""

    def feed(self, chunk: bytes) -> list[str]:
        """Return the newly completed, non-blank lines in ``chunk``."""
        parts = (self.remainder + chunk).split(b"\n")
        self.remainder = parts.pop()
        lines = []
        for part in parts:
            line = part.decode("utf-8", errors="replace")
            if line.strip():
                lines.append(line)
        return lines

    def take_if_complete(self) -> str | None:
        """Release the remainder if it is a self-contained JSON value.

        A writer that has not emitted its trailing newline yet may still
        have written a whole record.
        """
        if not self.remainder.strip():
            return None
        text = self.remainder.decode("utf-8", errors="replace")
        try:
            json.loads(text)
        except json.JSONDecodeError:
            return None
        self.remainder = b""
        return text

    def reset(self) -> None:
        self.remainder = b""
