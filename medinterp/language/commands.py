from __future__ import annotations

"""
Spoken command recognition for the live interpreter.

Design intent:
- Detect "repeat the last translation" requests in English and Spanish.
- Match on phrase patterns anywhere in the fragment; callers decide what to replay.
"""

import re

_REPEAT_PATTERNS = (
    re.compile(r"repeat\s+that", re.IGNORECASE),
    re.compile(r"say\s+that\s+again", re.IGNORECASE),
    re.compile(r"can\s+you\s+repeat", re.IGNORECASE),
    re.compile(r"repeat\s+please", re.IGNORECASE),
    re.compile(r"say\s+again", re.IGNORECASE),
    re.compile(r"repite\s+eso", re.IGNORECASE),
    re.compile(r"rep[ií]telo", re.IGNORECASE),
    re.compile(r"dilo\s+otra\s+vez", re.IGNORECASE),
    re.compile(r"puedes\s+repetir", re.IGNORECASE),
)


def is_repeat_command(text: str | None) -> bool:
    clean = str(text or "").strip()
    if not clean:
        return False
    return any(pattern.search(clean) for pattern in _REPEAT_PATTERNS)
