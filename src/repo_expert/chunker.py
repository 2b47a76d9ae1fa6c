"""Split file text into bounded-size chunks, each tagged with its source file.

The header convention is read by the remote search layer and must not change:
the first chunk of a file starts with ``FILE: <path>``, every later chunk with
``FILE: <path> (continued)``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

FILE_PREFIX = "FILE: "
CONTINUED_SUFFIX = " (continued)"
DEFAULT_MAX_CHARS = 2000

_SECTION_BREAK = re.compile(r"\n\n+")


@dataclass(frozen=True)
class Chunk:
    """One piece of a file, ready to become a remote passage."""

    text: str
    source_path: str


def chunk_file(file_path: str, content: str, max_chars: int = DEFAULT_MAX_CHARS) -> list[Chunk]:
    """Chunk ``content`` on blank-line boundaries.

    Sections are packed greedily into buffers of at most ``max_chars``. A single
    section larger than the bound still goes out whole, in a buffer of its own.
    """
    if not content.strip():
        return []

    header = f"{FILE_PREFIX}{file_path}"
    chunks: list[Chunk] = []
    current_header = header
    buffer = f"{current_header}\n\n"

    def has_body() -> bool:
        return bool(buffer[len(current_header):].strip())

    for section in _SECTION_BREAK.split(content):
        if len(buffer) + len(section) > max_chars and has_body():
            chunks.append(Chunk(text=buffer.strip(), source_path=file_path))
            current_header = f"{header}{CONTINUED_SUFFIX}"
            buffer = f"{current_header}\n\n"
        buffer += section + "\n\n"

    if has_body():
        chunks.append(Chunk(text=buffer.strip(), source_path=file_path))

    return chunks


def strip_header(chunk_text: str) -> str:
    """Return a chunk's body without its ``FILE:`` header line."""
    first, _, rest = chunk_text.partition("\n")
    if not first.startswith(FILE_PREFIX):
        return chunk_text
    return rest.lstrip("\n")
