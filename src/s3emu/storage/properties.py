"""Reader and writer for ``.properties`` metadata sidecars.

Object metadata is persisted in the line-oriented ``key=value`` format
used by ``java.util.Properties``, so sidecars written by earlier versions
of the on-disk layout stay readable. Files are written as ASCII with
``\\uXXXX`` escapes and read as ISO-8859-1.

Supported syntax when reading:
    - ``#`` and ``!`` comment lines, blank lines
    - ``=``, ``:`` or whitespace as key/value separator
    - backslash escapes (``\\t``, ``\\n``, ``\\r``, ``\\f``, ``\\uXXXX``)
    - line continuation with a trailing backslash
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

_ENCODING = "latin-1"

_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}
_REVERSE_ESCAPES = {"\t": "\\t", "\n": "\\n", "\r": "\\r", "\f": "\\f"}
_SPECIALS = "=:#!"
_WHITESPACE = " \t\f"


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def _escape(text: str, is_key: bool) -> str:
    out: list[str] = []
    for index, char in enumerate(text):
        if char == "\\":
            out.append("\\\\")
        elif char in _REVERSE_ESCAPES:
            out.append(_REVERSE_ESCAPES[char])
        elif char == " " and (is_key or index == 0):
            out.append("\\ ")
        elif char in _SPECIALS:
            out.append("\\" + char)
        elif ord(char) < 0x20 or ord(char) > 0x7E:
            # Characters outside the BMP become a UTF-16 surrogate pair.
            encoded = char.encode("utf-16-be", "surrogatepass")
            for i in range(0, len(encoded), 2):
                out.append("\\u%04X" % int.from_bytes(encoded[i : i + 2], "big"))
        else:
            out.append(char)
    return "".join(out)


def dumps(properties: dict[str, str], comment: str | None = None) -> str:
    """Serialize a property mapping to ``.properties`` text.

    Keys are written in sorted order so the output is deterministic.
    """
    lines = []
    if comment:
        lines.append("#" + _escape(comment, is_key=False))
    lines.append("#" + datetime.now(timezone.utc).strftime("%a %b %d %H:%M:%S UTC %Y"))
    for key in sorted(properties):
        lines.append(f"{_escape(key, True)}={_escape(str(properties[key]), False)}")
    return "\n".join(lines) + "\n"


def dump(properties: dict[str, str], path: Path) -> None:
    """Atomically write a property mapping to ``path``.

    The content is written to a temp file next to the target and renamed
    over it, so readers see either the old or the new sidecar.
    """
    path = Path(path)
    tmp = path.with_name(f"$tmp.{uuid.uuid4().hex[:12]}")
    data = dumps(properties).encode(_ENCODING)
    try:
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _logical_lines(text: str):
    """Yield logical lines, joining continuation lines."""
    pending = ""
    continuing = False
    for raw in text.splitlines():
        line = raw.lstrip(_WHITESPACE) if continuing else raw
        if not continuing:
            stripped = line.lstrip(_WHITESPACE)
            if not stripped or stripped[0] in "#!":
                continue
            line = stripped
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2 == 1:
            pending += line[:-1]
            continuing = True
            continue
        yield pending + line
        pending = ""
        continuing = False
    if continuing:
        yield pending


def _unescape(text: str) -> str:
    out: list[str] = []
    i = 0
    length = len(text)
    while i < length:
        char = text[i]
        if char != "\\" or i + 1 >= length:
            out.append(char)
            i += 1
            continue
        nxt = text[i + 1]
        if nxt == "u" and i + 6 <= length:
            try:
                out.append(chr(int(text[i + 2 : i + 6], 16)))
                i += 6
                continue
            except ValueError:
                pass
        out.append(_ESCAPES.get(nxt, nxt))
        i += 2
    # Re-pair surrogate halves produced by \uXXXX escapes.
    return "".join(out).encode("utf-16", "surrogatepass").decode("utf-16", "surrogatepass")


def _split(line: str) -> tuple[str, str]:
    """Split one logical line into its raw key and raw value."""
    i = 0
    length = len(line)
    while i < length:
        char = line[i]
        if char == "\\":
            i += 2
            continue
        if char in "=:" or char in _WHITESPACE:
            break
        i += 1
    key = line[:i]
    rest = line[i:].lstrip(_WHITESPACE)
    if rest and rest[0] in "=:":
        rest = rest[1:].lstrip(_WHITESPACE)
    return key, rest


def loads(text: str) -> dict[str, str]:
    """Parse ``.properties`` text into a dict. Later keys win."""
    result: dict[str, str] = {}
    for line in _logical_lines(text):
        raw_key, raw_value = _split(line)
        result[_unescape(raw_key)] = _unescape(raw_value)
    return result


def load(path: Path) -> dict[str, str]:
    """Read a sidecar file. A missing file yields an empty mapping."""
    try:
        with open(path, "rb") as fh:
            return loads(fh.read().decode(_ENCODING))
    except FileNotFoundError:
        return {}
