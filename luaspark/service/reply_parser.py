from __future__ import annotations

import re
from dataclasses import dataclass

PLACEHOLDER_EXPLANATION = "No explanation provided."
EMPTY_REPLY = "No response generated."

# CODE: <code> then a line holding only --- immediately followed by EXPLANATION:
_STRUCTURED_REPLY = re.compile(
    r"""
    \A\s*CODE:[ \t]*\n?
    (?P<code>.*?)
    \n[ \t]*---[ \t]*\n
    [ \t]*EXPLANATION:[ \t]*
    (?P<explanation>.*)\Z
    """,
    re.IGNORECASE | re.DOTALL | re.VERBOSE,
)


@dataclass(frozen=True)
class ParsedReply:
    code: str
    explanation: str
    structured: bool


def parse_reply(raw: str) -> ParsedReply:
    """Split a model reply into its code and explanation halves.

    Replies that do not follow the ``CODE:`` / ``---`` / ``EXPLANATION:``
    layout are returned whole as code with a placeholder explanation.
    """
    text = (raw or "").strip()
    if not text:
        return ParsedReply(code=EMPTY_REPLY, explanation=PLACEHOLDER_EXPLANATION, structured=False)
    match = _STRUCTURED_REPLY.match(text)
    if match:
        return ParsedReply(
            code=match.group("code").strip(),
            explanation=match.group("explanation").strip(),
            structured=True,
        )
    return ParsedReply(code=text, explanation=PLACEHOLDER_EXPLANATION, structured=False)
