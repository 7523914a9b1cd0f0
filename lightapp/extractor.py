"""Recovery of JSON objects from free-text model replies.

Models are told to answer with a bare JSON object but routinely wrap it in
reasoning blocks, markdown fences, or prose, and sometimes emit strings with
unescaped quotes or raw newlines.  :func:`extract_json` tries, in order:

1. strip ``<think>`` blocks and a surrounding code fence, strict parse;
2. strict parse of a ```` ```json ```` fenced block;
3. strict parse of the outermost ``{...}`` span;
4. lenient repair of that span (only when it is a single object literal),
   then strict parse;

and raises :class:`ExtractionError` with an excerpt of the reply when all of
them fail.  Well-formed output never reaches the repair step.
"""

from __future__ import annotations

import json
import re
from typing import Any

from lightapp.utils import print_warning, truncate

_EXCERPT_CHARS = 1000

_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)
_THINK_CLOSE = "</think>"
_LEADING_FENCE = re.compile(r"^```[a-zA-Z]*\s*")
_TRAILING_FENCE = re.compile(r"\s*```$")
_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
_OUTER_BRACES = re.compile(r"\{[\s\S]*\}")

_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}
_STRING_TERMINATORS = ",:}]"


class ExtractionError(Exception):
    """No strategy could recover a JSON object from the model reply.

    Attributes:
        excerpt: The first characters of the raw reply, for diagnosing prompt
            regressions without re-running the model.
    """

    def __init__(self, message: str, excerpt: str = "") -> None:
        self.excerpt = excerpt
        super().__init__(f"{message}. Response excerpt: {excerpt!r}" if excerpt else message)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_object(text: str) -> dict[str, Any] | None:
    """Strict-parse *text*; return the value only if it is a JSON object."""
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def strip_reasoning(text: str) -> str:
    """Remove ``<think>...</think>`` blocks.

    Some models drop the opening tag; anything before a dangling closing tag
    is treated as reasoning too.
    """
    cleaned = _THINK_BLOCK.sub("", text)
    if _THINK_CLOSE in cleaned.lower():
        idx = cleaned.lower().rfind(_THINK_CLOSE)
        cleaned = cleaned[idx + len(_THINK_CLOSE):]
    return cleaned.strip()


def strip_fences(text: str) -> str:
    """Remove one leading and one trailing markdown code fence."""
    cleaned = _LEADING_FENCE.sub("", text.strip())
    return _TRAILING_FENCE.sub("", cleaned).strip()


def _next_significant(text: str, start: int) -> str:
    for ch in text[start:]:
        if not ch.isspace():
            return ch
    return ""


def _drop_trailing_comma(out: list[str]) -> None:
    while out and out[-1].isspace():
        out.pop()
    if out and out[-1] == ",":
        out.pop()


def repair_json(text: str) -> str:
    """Best-effort repair of an almost-JSON object literal.

    * Raw control characters inside strings are escaped.
    * A quote inside a string that is not followed by ``,`` ``:`` ``}``
      ``]`` (or the end of input) is treated as content and escaped.
    * Trailing commas before ``}`` / ``]`` are dropped.
    * An unterminated string and unclosed brackets are closed.

    The function only rewrites characters; it never evaluates anything.
    """
    out: list[str] = []
    closers: list[str] = []
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                out.append(ch)
                escaped = False
            elif ch == "\\":
                out.append(ch)
                escaped = True
            elif ch == '"':
                nxt = _next_significant(text, i + 1)
                if nxt == "" or nxt in _STRING_TERMINATORS:
                    out.append(ch)
                    in_string = False
                else:
                    out.append('\\"')
            elif ch in _CONTROL_ESCAPES:
                out.append(_CONTROL_ESCAPES[ch])
            elif ord(ch) < 0x20:
                out.append(f"\\u{ord(ch):04x}")
            else:
                out.append(ch)
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
        elif ch in "{[":
            closers.append("}" if ch == "{" else "]")
            out.append(ch)
        elif ch in "}]":
            _drop_trailing_comma(out)
            if closers:
                closers.pop()
            out.append(ch)
        else:
            out.append(ch)

    if escaped:
        out.pop()
    if in_string:
        out.append('"')
    for closer in reversed(closers):
        _drop_trailing_comma(out)
        out.append(closer)
    return "".join(out)


def _looks_like_object(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("{") and stripped.endswith("}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def extract_json(raw_text: str | None) -> dict[str, Any]:
    """Recover a JSON object from a model reply.

    Args:
        raw_text: The reply exactly as returned by the completion call.

    Returns:
        The parsed object.

    Raises:
        ExtractionError: When every strategy fails.  No other exception type
            escapes this function.
    """
    content = raw_text or ""
    excerpt = truncate(content, _EXCERPT_CHARS)
    if not content.strip():
        raise ExtractionError("Model returned an empty response")

    without_reasoning = strip_reasoning(content)
    cleaned = strip_fences(without_reasoning)

    # Strategy 1: the whole cleaned reply.
    result = _parse_object(cleaned)
    if result is not None:
        return result

    # Strategy 2: an explicit ```json block anywhere in the reply.
    fenced = _JSON_FENCE.search(without_reasoning)
    if fenced:
        result = _parse_object(fenced.group(1))
        if result is not None:
            return result

    # Strategy 3: greedy outermost braces.
    braces = _OUTER_BRACES.search(cleaned)
    if braces is None:
        raise ExtractionError("No JSON object found in response", excerpt)
    span = braces.group(0)
    result = _parse_object(span)
    if result is not None:
        return result

    # Strategy 4: lenient repair, restricted to a single object literal.
    if _looks_like_object(span):
        result = _parse_object(repair_json(span))
        if result is not None:
            print_warning("Recovered malformed JSON via lenient repair")
            return result

    raise ExtractionError("Failed to extract JSON from response", excerpt)
