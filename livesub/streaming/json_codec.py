# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

_WS = " \t\n\v\f\r"
_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_HEX = "0123456789abcdefABCDEF"


class JsonFieldError(ValueError):
    pass


def escape_json(value: str) -> str:
    out = []
    for ch in str(value or ""):
        if ch == '"':
            out.append('\\"')
        elif ch == "\\":
            out.append("\\\\")
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        elif ord(ch) < 0x20:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return "".join(out)


def json_str(key: str, value: str) -> str:
    return f'"{key}":"{escape_json(value)}"'


def json_bool(key: str, value: bool) -> str:
    return f'"{key}":{"true" if value else "false"}'


def json_object(*fields: str) -> str:
    return "{" + ",".join(fields) + "}"


def _skip_ws(s: str, pos: int) -> int:
    n = len(s)
    while pos < n and s[pos] in _WS:
        pos += 1
    return pos


def _parse_hex4(s: str, pos: int) -> Tuple[int, int]:
    digits = s[pos : pos + 4]
    if len(digits) != 4 or any(c not in _HEX for c in digits):
        raise JsonFieldError(f"bad \\u escape at {pos}")
    return int(digits, 16), pos + 4


def _parse_string(s: str, pos: int) -> Tuple[str, int]:
    if pos >= len(s) or s[pos] != '"':
        raise JsonFieldError(f"expected string at {pos}")
    pos += 1
    out = []
    n = len(s)
    while pos < n:
        c = s[pos]
        pos += 1
        if c == '"':
            return "".join(out), pos
        if ord(c) < 0x20:
            raise JsonFieldError(f"unescaped control character at {pos - 1}")
        if c != "\\":
            out.append(c)
            continue

        if pos >= n:
            break
        esc = s[pos]
        pos += 1
        if esc in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[esc])
            continue
        if esc != "u":
            raise JsonFieldError(f"invalid escape \\{esc}")

        cu1, pos = _parse_hex4(s, pos)
        if 0xD800 <= cu1 <= 0xDBFF:
            if s[pos : pos + 2] != "\\u":
                raise JsonFieldError("unpaired high surrogate")
            cu2, pos = _parse_hex4(s, pos + 2)
            if not 0xDC00 <= cu2 <= 0xDFFF:
                raise JsonFieldError("unpaired high surrogate")
            out.append(chr(0x10000 + ((cu1 - 0xD800) << 10) + (cu2 - 0xDC00)))
        elif 0xDC00 <= cu1 <= 0xDFFF:
            raise JsonFieldError("lone low surrogate")
        else:
            out.append(chr(cu1))
    raise JsonFieldError("unterminated string")


def _skip_container(s: str, pos: int, close: str) -> int:
    # pos points just past the opening bracket
    pos = _skip_ws(s, pos)
    if pos < len(s) and s[pos] == close:
        return pos + 1
    while pos < len(s):
        if close == "}":
            _, pos = _parse_string(s, pos)
            pos = _skip_ws(s, pos)
            if pos >= len(s) or s[pos] != ":":
                raise JsonFieldError(f"expected ':' at {pos}")
            pos += 1
        pos = _skip_value(s, pos)
        pos = _skip_ws(s, pos)
        if pos >= len(s):
            break
        if s[pos] == ",":
            pos = _skip_ws(s, pos + 1)
            continue
        if s[pos] == close:
            return pos + 1
        raise JsonFieldError(f"unexpected {s[pos]!r} at {pos}")
    raise JsonFieldError("unterminated container")


def _skip_value(s: str, pos: int) -> int:
    pos = _skip_ws(s, pos)
    if pos >= len(s):
        raise JsonFieldError("missing value")
    c = s[pos]
    if c == '"':
        return _parse_string(s, pos)[1]
    if c == "{":
        return _skip_container(s, pos + 1, "}")
    if c == "[":
        return _skip_container(s, pos + 1, "]")

    start = pos
    while pos < len(s) and s[pos] not in ",}]" and s[pos] not in _WS:
        pos += 1
    if pos == start:
        raise JsonFieldError(f"missing value at {pos}")
    return pos


def _read_fields(s: str, wanted: Tuple[str, ...]) -> dict:
    """
    Walk one top-level object and collect the string values of `wanted` keys.

    Every other value is skipped without being materialized. The first
    occurrence of a key wins; later duplicates must still be strings.
    """
    text = str(s or "")
    pos = _skip_ws(text, 0)
    if pos >= len(text) or text[pos] != "{":
        raise JsonFieldError("json message must be an object")
    pos = _skip_ws(text, pos + 1)
    if pos < len(text) and text[pos] == "}":
        raise JsonFieldError("json object is empty")

    found: dict = {}
    closed = False
    while pos < len(text):
        name, pos = _parse_string(text, pos)
        pos = _skip_ws(text, pos)
        if pos >= len(text) or text[pos] != ":":
            raise JsonFieldError(f"expected ':' at {pos}")
        pos = _skip_ws(text, pos + 1)

        if name in wanted:
            value, pos = _parse_string(text, pos)
            found.setdefault(name, value)
        else:
            pos = _skip_value(text, pos)

        pos = _skip_ws(text, pos)
        if pos >= len(text):
            break
        if text[pos] == ",":
            pos = _skip_ws(text, pos + 1)
            continue
        if text[pos] == "}":
            pos += 1
            closed = True
            break
        raise JsonFieldError(f"unexpected {text[pos]!r} at {pos}")

    if not closed:
        raise JsonFieldError("unterminated object")
    if _skip_ws(text, pos) != len(text):
        raise JsonFieldError("trailing data after object")
    return found


def get_string_field(s: str, key: str) -> str:
    found = _read_fields(s, (key,))
    if key not in found:
        raise JsonFieldError(f"missing string field {key!r}")
    return found[key]


@dataclass(frozen=True)
class ConfigUpdate:
    source_lang: Optional[str] = None
    target_lang: Optional[str] = None

    @property
    def has_source_lang(self) -> bool:
        return self.source_lang is not None

    @property
    def has_target_lang(self) -> bool:
        return self.target_lang is not None


def parse_config_update(s: str) -> ConfigUpdate:
    found = _read_fields(s, ("source_lang", "target_lang"))
    if not found:
        raise JsonFieldError("neither source_lang nor target_lang present")
    return ConfigUpdate(
        source_lang=found.get("source_lang"),
        target_lang=found.get("target_lang"),
    )
