"""Name matching helpers used when resolving oracle-proposed feature names."""

import re
from typing import Mapping

STOPWORDS = frozenset(
    """
    a an the and or of for in on to with by at from is are was be has had have
    do does did not no but if so as it its this that all each every both few
    more most other some such than too very can will just should now also into
    only own same then when where which while how what who why
    """.split()
)

_SPLIT_RE = re.compile(r"[\s\-_/&+,.:;()]+")


def extract_meaningful_words(text: str) -> set[str]:
    """Lowercase, split on whitespace/punctuation, drop stopwords and 1-char words."""
    return {w for w in _SPLIT_RE.split(text.lower().strip()) if len(w) > 1 and w not in STOPWORDS}


def word_overlap(name1: str, name2: str) -> float:
    """Jaccard overlap of meaningful words, 0.0 to 1.0.

    At least two shared words are required unless both names reduce to a
    single meaningful word.
    """
    words1 = extract_meaningful_words(name1)
    words2 = extract_meaningful_words(name2)
    if not words1 or not words2:
        return 0.0
    common = len(words1 & words2)
    min_common = 1 if len(words1) == 1 and len(words2) == 1 else 2
    if common < min_common:
        return 0.0
    return common / len(words1 | words2)


def resolve_name(name: str, name_to_id: Mapping[str, str]) -> str | None:
    """Exact, then case-insensitive lookup of a name the oracle echoed back."""
    if name in name_to_id:
        return name_to_id[name]
    wanted = name.lower().strip()
    for key, ident in name_to_id.items():
        if key.lower().strip() == wanted:
            return ident
    return None


def find_best_match(candidate: str, name_to_id: Mapping[str, str], threshold: float = 0.5) -> str | None:
    """Return the id of the best-matching name, or None.

    Case-insensitive exact matches win; otherwise the highest word overlap at
    or above `threshold`. Ties keep the first name in mapping order.
    """
    exact = resolve_name(candidate, name_to_id)
    if exact is not None:
        return exact

    best_id: str | None = None
    best_score = 0.0
    for name, ident in name_to_id.items():
        score = word_overlap(candidate, name)
        if score >= threshold and score > best_score:
            best_score = score
            best_id = ident
    return best_id
