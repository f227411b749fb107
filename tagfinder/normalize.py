"""Query and tag-name normalization.

Indexing (worker, seeding, backfills) and querying (search) both go through
these functions, so they must stay deterministic and free of I/O: if the two
paths normalize differently, tags silently stop matching queries.

Rules:
    * whitespace runs collapse to one ASCII space, ends trimmed
    * only ASCII A-Z are lowercased, no Unicode case folding
    * non-ASCII codepoints are removed outright
    * anything outside ``[a-z0-9 -]`` becomes a space, and a hyphen survives
      only when it joins two alphanumerics (``film-noir``)
    * stopwords are whole-token matches only

None of these functions raise; bad input degrades to ``""``, ``[]`` or
``None`` and callers decide what that means.
"""
import re
from typing import AbstractSet, Iterable, List, Optional

DEFAULT_STOPWORDS = frozenset({"a", "an", "the", "s", "re"})

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace runs (spaces, tabs, newlines) to one space and trim."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def lowercase_ascii_only(text: str) -> str:
    """Lowercase A-Z, leave every other codepoint untouched."""
    return "".join(chr(ord(ch) + 32) if "A" <= ch <= "Z" else ch for ch in text)


def strip_non_ascii(text: str) -> str:
    return "".join(ch for ch in text if ord(ch) <= 127)


def _is_alnum(ch: Optional[str]) -> bool:
    return ch is not None and ("a" <= ch <= "z" or "0" <= ch <= "9")


def strip_punctuation_preserve_inner_hyphens(text: str) -> str:
    """Replace punctuation with spaces, keeping hyphens between alphanumerics.

    Expects lowercased ASCII input. ``"-sad-"`` becomes ``" sad "`` while
    ``"film-noir"`` is left alone.
    """
    kept = [ch if (_is_alnum(ch) or ch == " " or ch == "-") else " " for ch in text]

    out = []
    for i, ch in enumerate(kept):
        if ch != "-":
            out.append(ch)
            continue
        prev_ch = kept[i - 1] if i > 0 else None
        next_ch = kept[i + 1] if i + 1 < len(kept) else None
        out.append("-" if _is_alnum(prev_ch) and _is_alnum(next_ch) else " ")
    return "".join(out)


def normalize_query_string(raw: str) -> str:
    """Apply the full normalization pipeline to a raw string."""
    text = normalize_whitespace(raw)
    text = lowercase_ascii_only(text)
    text = strip_non_ascii(text)
    text = strip_punctuation_preserve_inner_hyphens(text)
    # Punctuation stripping can introduce new runs of spaces
    return normalize_whitespace(text)


def remove_stopwords(
    tokens: Iterable[str], stopwords: AbstractSet[str] = DEFAULT_STOPWORDS
) -> List[str]:
    return [token for token in tokens if token not in stopwords]


def tokenize_query(raw: str, stopwords: AbstractSet[str] = DEFAULT_STOPWORDS) -> List[str]:
    """Normalize, split, drop stopwords and de-duplicate (first occurrence wins)."""
    normalized = normalize_query_string(raw)
    if not normalized:
        return []

    seen = set()
    tokens = []
    for token in remove_stopwords(normalized.split(" "), stopwords):
        if token and token not in seen:
            seen.add(token)
            tokens.append(token)
    return tokens


def normalize_tag_name(raw: str, stopwords: AbstractSet[str] = DEFAULT_STOPWORDS) -> Optional[str]:
    """Normalize a candidate tag name.

    Returns None when the result is empty, a stopword, or more than one
    token. Multi-word phrases are rejected rather than joined.
    """
    normalized = normalize_query_string(raw)
    if not normalized:
        return None
    if normalized in stopwords:
        return None
    if " " in normalized:
        return None
    return normalized


def expand_hyphenated_token(
    tag_name: str, stopwords: AbstractSet[str] = DEFAULT_STOPWORDS
) -> List[str]:
    """Return ``[tag_name, part1, part2, ...]`` for a hyphenated tag.

    Each part is re-validated with :func:`normalize_tag_name`; invalid parts
    and duplicates are dropped. A tag without hyphens comes back as
    ``[tag_name]`` and an invalid tag name as ``[]``.

    >>> expand_hyphenated_token("film-noir")
    ['film-noir', 'film', 'noir']
    """
    token = normalize_tag_name(tag_name, stopwords)
    if token is None:
        return []
    if "-" not in token:
        return [token]

    expanded = [token]
    for part in token.split("-"):
        name = normalize_tag_name(part, stopwords)
        if name is not None and name not in expanded:
            expanded.append(name)
    return expanded
