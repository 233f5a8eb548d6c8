"""Similarity algorithm library.

Every algorithm maps two already-normalized strings to a similarity in
[0, 1]. They are pure and deterministic; normalization driven by a
``FieldMatchingConfig`` happens in ``normalize_value`` before any of them
run.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Callable, Dict, Optional

from rapidfuzz.distance import Levenshtein

from dedup_engine.utils.logger import log_warning

SimilarityFn = Callable[[str, str], float]

_SPECIAL_CHARS = re.compile(r"[^\w\s]")
_NON_DIGITS = re.compile(r"\D")
_NON_ALPHA = re.compile(r"[^A-Z]")

_SOUNDEX_CODES = {
    **dict.fromkeys("BFPV", "1"),
    **dict.fromkeys("CGJKQSXZ", "2"),
    **dict.fromkeys("DT", "3"),
    "L": "4",
    **dict.fromkeys("MN", "5"),
    "R": "6",
}


def _as_text(value: Any) -> str:
    """``1.0`` and ``1`` both become ``"1"``; booleans become ``"true"``/``"false"``."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_value(value: Any, config: Any = None) -> str:
    """Coerce a field value to the string the algorithms compare.

    ``config`` is anything exposing ``normalize_before_match``,
    ``ignore_special_chars`` and ``case_sensitive`` (a ``FieldMatchingConfig``).
    """
    text = _as_text(value)
    if config is None:
        return text.strip().lower()

    if config.normalize_before_match:
        if config.ignore_special_chars:
            text = _SPECIAL_CHARS.sub("", text)
        text = text.strip()
    if not config.case_sensitive:
        text = text.lower()
    return text


def exact(a: str, b: str) -> float:
    return 1.0 if a == b else 0.0


def levenshtein_distance(a: str, b: str) -> int:
    """Unit-cost insert/delete/substitute edit distance."""
    return Levenshtein.distance(a, b)


def levenshtein(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein_distance(a, b)) / longest


def jaro(a: str, b: str) -> float:
    """Standard Jaro similarity with a ``max(len)//2 - 1`` match window."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    window = max(len(a), len(b)) // 2 - 1
    a_flags = [False] * len(a)
    b_flags = [False] * len(b)

    matches = 0
    for i, char in enumerate(a):
        start = max(0, i - window)
        end = min(i + window + 1, len(b))
        for j in range(start, end):
            if b_flags[j] or b[j] != char:
                continue
            a_flags[i] = b_flags[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i, char in enumerate(a):
        if not a_flags[i]:
            continue
        while not b_flags[k]:
            k += 1
        if char != b[k]:
            transpositions += 1
        k += 1

    return (
        matches / len(a)
        + matches / len(b)
        + (matches - transpositions / 2) / matches
    ) / 3


def jaro_winkler(a: str, b: str, prefix_weight: float = 0.1) -> float:
    score = jaro(a, b)
    if score < 0.7:
        return score

    prefix = 0
    for x, y in zip(a[:4], b[:4]):
        if x != y:
            break
        prefix += 1
    return score + prefix_weight * prefix * (1 - score)


def soundex_code(value: str) -> str:
    """Four-character Soundex code (``"0000"`` for no letters).

    Vowels, H, W and Y are dropped without separating digits, and a digit
    equal to the last one emitted is collapsed. The first letter's own code
    is not compared, so ``Pfister`` is ``P123``.
    """
    letters = _NON_ALPHA.sub("", value.upper())
    if not letters:
        return "0000"

    code = letters[0]
    for char in letters[1:]:
        digit = _SOUNDEX_CODES.get(char, "0")
        if digit != "0" and digit != code[-1]:
            code += digit
            if len(code) == 4:
                break
    return code.ljust(4, "0")


def soundex(a: str, b: str) -> float:
    return 1.0 if soundex_code(a) == soundex_code(b) else 0.0


def fuzzy(a: str, b: str) -> float:
    """Character-frequency overlap divided by the longer length."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    overlap = Counter(a) & Counter(b)
    return sum(overlap.values()) / longest


def email(a: str, b: str) -> float:
    local_a, _, domain_a = a.partition("@")
    local_b, _, domain_b = b.partition("@")
    if not domain_a or not domain_b:
        return 0.0
    if domain_a.lower() != domain_b.lower():
        return 0.0
    return levenshtein(local_a.lower(), local_b.lower())


def phone(a: str, b: str) -> float:
    digits_a = _NON_DIGITS.sub("", a)
    digits_b = _NON_DIGITS.sub("", b)
    if digits_a == digits_b:
        return 1.0

    if digits_a and digits_b and len(digits_a) != len(digits_b):
        shorter, longer = sorted((digits_a, digits_b), key=len)
        # Local vs. international form of the same number
        if longer.endswith(shorter):
            return 0.9

    return levenshtein(digits_a, digits_b)


ALGORITHMS: Dict[str, SimilarityFn] = {
    "exact": exact,
    "levenshtein": levenshtein,
    "jaro": jaro,
    "jaro_winkler": jaro_winkler,
    "soundex": soundex,
    "fuzzy": fuzzy,
    "email": email,
    "phone": phone,
}

ALGORITHM_ALIASES = {
    "jarowinkler": "jaro_winkler",
    "jaro-winkler": "jaro_winkler",
}

# Family of each algorithm, used to tag a duplicate's detection method.
ALGORITHM_KINDS = {
    "exact": "exact",
    "levenshtein": "fuzzy",
    "jaro": "fuzzy",
    "jaro_winkler": "fuzzy",
    "fuzzy": "fuzzy",
    "soundex": "phonetic",
    "email": "fuzzy",
    "phone": "fuzzy",
}

DEFAULT_ALGORITHM = "levenshtein"


def canonical_name(name: str) -> str:
    key = name.strip()
    return ALGORITHM_ALIASES.get(key.lower(), key if key in ALGORITHMS else key.lower())


def resolve_algorithm(name: str) -> SimilarityFn:
    """Look up an algorithm by name; unknown names fall back to Levenshtein."""
    fn: Optional[SimilarityFn] = ALGORITHMS.get(canonical_name(name))
    if fn is None:
        log_warning("Unknown similarity algorithm, using levenshtein", algorithm=name)
        return ALGORITHMS[DEFAULT_ALGORITHM]
    return fn


def similarity(a: str, b: str, algorithm: str) -> float:
    return resolve_algorithm(algorithm)(a, b)
