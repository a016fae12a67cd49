"""
Tool: Answer Comparators

A comparator takes two free-text answers and returns an agreement score in
[0, 1]. The scoring engine only needs that contract; which comparator a
session uses is a configuration choice.

Built-in comparators:
  - token_jaccard:  overlap of word trigrams (word sets for short answers)
  - sequence_ratio: difflib similarity over normalised text
  - verdict:        compares yes/no verdicts extracted from each answer
"""
from __future__ import annotations

import difflib
import re
from typing import Callable, Dict, Optional

Comparator = Callable[[str, str], float]

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\n(.*?)\n```", re.DOTALL)
_WORD_RE = re.compile(r"[a-z0-9']+")


def normalize_text(text: str) -> str:
    """Lowercase, unwrap a single code fence, collapse whitespace."""
    text = text.strip()
    m = _FENCE_RE.fullmatch(text)
    if m:
        text = m.group(1)
    return re.sub(r"\s+", " ", text).strip().lower()


def token_jaccard(a: str, b: str) -> float:
    """Jaccard similarity on word trigrams."""
    words_a = _WORD_RE.findall(normalize_text(a))
    words_b = _WORD_RE.findall(normalize_text(b))
    if not words_a or not words_b:
        return 0.0
    if len(words_a) < 3 or len(words_b) < 3:
        set_a, set_b = set(words_a), set(words_b)
        return len(set_a & set_b) / len(set_a | set_b)
    trigrams_a = set(tuple(words_a[i:i + 3]) for i in range(len(words_a) - 2))
    trigrams_b = set(tuple(words_b[i:i + 3]) for i in range(len(words_b) - 2))
    return len(trigrams_a & trigrams_b) / len(trigrams_a | trigrams_b)


def sequence_ratio(a: str, b: str) -> float:
    # Symmetrised: SequenceMatcher.ratio() can depend on argument order
    a, b = normalize_text(a), normalize_text(b)
    if not a or not b:
        return 0.0
    forward = difflib.SequenceMatcher(a=a, b=b).ratio()
    backward = difflib.SequenceMatcher(a=b, b=a).ratio()
    return (forward + backward) / 2


# ──────────────────────────────────────────────
# Verdict extraction
# ──────────────────────────────────────────────

_VERDICT_RE = re.compile(
    r"\b(?P<neg>no|not|invalid|false|incorrect|reject(?:ed)?|disagree|wrong)\b"
    r"|\b(?P<pos>yes|valid|true|correct|accept(?:ed)?|agree|right)\b"
)


def extract_verdict(text: str) -> Optional[bool]:
    """
    Pull a yes/no verdict out of an answer.

    Only the first sentence is inspected, since models usually lead with
    the verdict and then qualify it. The earliest verdict word wins, so
    "not valid" reads as negative and "yes, though not always" as positive.

    Returns True, False, or None when no verdict is recognisable.
    """
    first = re.split(r"(?<=[.!?])\s", normalize_text(text), maxsplit=1)[0]
    m = _VERDICT_RE.search(first)
    if m is None:
        return None
    return m.group("pos") is not None


def verdict_agreement(a: str, b: str) -> float:
    va, vb = extract_verdict(a), extract_verdict(b)
    if va is None or vb is None:
        return 0.5
    return 1.0 if va == vb else 0.0


# ──────────────────────────────────────────────
# Registry
# ──────────────────────────────────────────────

COMPARATORS: Dict[str, Comparator] = {
    "token_jaccard": token_jaccard,
    "sequence_ratio": sequence_ratio,
    "verdict": verdict_agreement,
}


def get_comparator(name: str) -> Comparator:
    """Look up a comparator by its configured name."""
    try:
        return COMPARATORS[name]
    except KeyError:
        raise ValueError(
            f"Unknown comparator '{name}'. Available: {', '.join(sorted(COMPARATORS))}"
        ) from None
