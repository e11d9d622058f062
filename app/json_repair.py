"""
Repairs for the almost-JSON that chat models tend to produce.

Both passes walk the text one character at a time and track whether they are
inside a string literal, so structural characters are never touched inside
strings and string contents are never touched outside them.
"""

from enum import Enum
from typing import Optional

CONTROL_CHAR_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


class ScanState(Enum):
    OUTSIDE_STRING = "outside"
    INSIDE_STRING = "inside"
    ESCAPED = "escaped"


def _advance(state: ScanState, char: str) -> ScanState:
    if state is ScanState.OUTSIDE_STRING:
        return ScanState.INSIDE_STRING if char == '"' else state
    if state is ScanState.ESCAPED:
        return ScanState.INSIDE_STRING
    if char == "\\":
        return ScanState.ESCAPED
    if char == '"':
        return ScanState.OUTSIDE_STRING
    return state


def escape_control_characters(text: str) -> str:
    """Escape raw newlines/tabs inside string literals; other control chars become spaces."""
    out = []
    state = ScanState.OUTSIDE_STRING
    for char in text:
        if state is ScanState.INSIDE_STRING and ord(char) < 0x20:
            out.append(CONTROL_CHAR_ESCAPES.get(char, " "))
            continue
        if state is ScanState.ESCAPED and ord(char) < 0x20:
            # a backslash cannot escape a raw control character
            out.pop()
            out.append(CONTROL_CHAR_ESCAPES.get(char, " "))
            state = ScanState.INSIDE_STRING
            continue
        out.append(char)
        state = _advance(state, char)
    return "".join(out)


def remove_trailing_commas(text: str) -> str:
    """Drop commas that are followed (after whitespace) by a closing } or ]."""
    out = []
    state = ScanState.OUTSIDE_STRING
    length = len(text)
    for i, char in enumerate(text):
        if state is ScanState.OUTSIDE_STRING and char == ",":
            j = i + 1
            while j < length and text[j] in " \t\r\n":
                j += 1
            if j < length and text[j] in "}]":
                continue
        out.append(char)
        state = _advance(state, char)
    return "".join(out)


def repair_json(text: str) -> str:
    return remove_trailing_commas(escape_control_characters(text))


def extract_json_object(text: str) -> Optional[str]:
    """Slice from the first '{' to the last '}', dropping prose around the object."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]
