"""Text normalization shared by alias detection, food scoring and parsing."""

import re
import unicodedata

NOISE_WORDS = {
    "de", "con", "the", "a", "an", "and", "y", "or", "o", "en", "in", "of", "with",
}

# punctuation, except a decimal point or comma between digits
_PUNCT_RE = re.compile(r"(?!(?<=\d)[.,](?=\d))[^\w\s]", flags=re.UNICODE)
_SEPARATORS_RE = re.compile(r"[,.\-_/]")
_SPACES_RE = re.compile(r"\s+")
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", flags=re.IGNORECASE)


def collapse_spaces(text):
    return _SPACES_RE.sub(" ", text or "").strip()


def normalize_text(text):
    """Lowercase, strip punctuation, collapse whitespace.

    Character offsets reported by alias detection refer to this form.
    """
    lowered = (text or "").lower()
    lowered = _PUNCT_RE.sub(" ", lowered)
    lowered = lowered.replace("_", " ")
    return collapse_spaces(lowered)


def strip_accents(text):
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_search_query(text):
    """Catalog-oriented normalization: separators to spaces, noise words removed."""
    q = (text or "").strip().lower()
    q = _SEPARATORS_RE.sub(" ", q)
    words = [w for w in q.split() if w not in NOISE_WORDS]
    return collapse_spaces(" ".join(words))


def contains_words(haystack, needle):
    """True if `needle` occurs in `haystack` on word boundaries (case-insensitive)."""
    haystack = (haystack or "").lower().strip()
    needle = (needle or "").lower().strip()
    if not haystack or not needle:
        return False
    return re.search(r"(?<!\w)" + re.escape(needle) + r"(?!\w)", haystack) is not None


def strip_code_fences(raw):
    """Remove a ```json ... ``` wrapper the model sometimes adds around JSON."""
    return _FENCE_RE.sub("", (raw or "").strip()).strip()


def parse_number(text):
    """Parse '2', '1.5' or '1,5' into a float. Returns None if not a number."""
    if text is None:
        return None
    cleaned = str(text).strip().replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def format_quantity(value):
    if value is None:
        return ""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"
