"""
Line Splitter
Turns byte chunks into complete lines, holding back a trailing partial line
"""

from typing import List, Tuple

NEWLINE = b"\n"


def split_lines(pending: bytes, chunk: bytes) -> Tuple[List[bytes], bytes]:
    """Split ``pending + chunk`` into complete lines and the unterminated remainder.

    Lines are returned without their newline (a trailing ``\\r`` is dropped too)
    and in file order. Empty lines are kept so callers can count bytes exactly.
    A buffer that does not end with a newline always yields a non-empty
    remainder, which must be fed back in as ``pending`` on the next call.
    """
    buffer = pending + chunk
    if not buffer:
        return [], b""

    last_newline = buffer.rfind(NEWLINE)
    if last_newline == -1:
        return [], buffer

    complete, remainder = buffer[:last_newline], buffer[last_newline + 1:]
    lines = [line[:-1] if line.endswith(b"\r") else line for line in complete.split(NEWLINE)]
    return lines, remainder
