from __future__ import annotations

import re

_MIN_MEANINGFUL_CHARS = 3

_NOISE_PATTERNS = (
    re.compile(r"^[aeiou\s]*$"),
    re.compile(r"^[hm\s]*$"),
    re.compile(r"^[uh\s]*$"),
    re.compile(r"^[ah\s]*$"),
    re.compile(r"^[oh\s]*$"),
    re.compile(r"^\W*$"),
)
_FILLER_TOKENS = frozenset(
    {"um", "umm", "uh", "uhh", "uhm", "hmm", "hm", "mm", "mmm", "mhm", "ah", "oh", "eh", "er", "erm"}
)
_FILLER_STRIP = ".,;:!?¿¡-…\"'"


def _only_fillers(clean: str) -> bool:
    tokens = [token.strip(_FILLER_STRIP) for token in clean.split()]
    tokens = [token for token in tokens if token]
    return bool(tokens) and all(token in _FILLER_TOKENS for token in tokens)


def is_noise(text: str | None) -> bool:
    clean = str(text or "").lower().strip()
    if len(clean) < _MIN_MEANINGFUL_CHARS:
        return True
    if any(pattern.match(clean) for pattern in _NOISE_PATTERNS):
        return True
    return _only_fillers(clean)


def is_meaningful_speech(text: str | None) -> bool:
    """Return True when a transcript fragment should be classified and stored."""
    return not is_noise(text)
