"""Tokenization and front-matter parsing shared by the registry and classifier."""

import re
from collections.abc import Iterable

import yaml

TOKEN_PATTERN = re.compile(r"[^\W_]+")
FRONT_MATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)

# Function words that would otherwise match almost every unit
STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "could", "do",
    "does", "for", "from", "have", "how", "i", "if", "in", "into", "is", "it", "its",
    "me", "my", "of", "on", "or", "our", "please", "should", "so", "that", "the",
    "their", "this", "to", "us", "was", "we", "what", "when", "which", "with",
    "would", "you", "your",
})


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation and drop stopwords, keeping document order."""
    return [
        token
        for token in (match.group(0) for match in TOKEN_PATTERN.finditer(text.lower()))
        if token not in STOPWORDS
    ]


def unique_tokens(text: str) -> list[str]:
    """Tokens of `text` without repeats, in first-seen order."""
    return list(dict.fromkeys(tokenize(text)))


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def tag_terms(tags: Iterable[str]) -> list[str]:
    """Query-comparable terms of a tag set: "code-review" yields "code" and "review"."""
    return sorted({term for tag in tags for term in tokenize(tag)})


def parse_tags(value: object) -> frozenset[str]:
    """Accept tags as a YAML list or a comma-separated string."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [str(item) for item in value]
    else:
        items = [str(value)]
    return frozenset(tag for tag in (normalize_tag(item) for item in items) if tag)


def split_front_matter(text: str) -> tuple[dict, str]:
    """Split a `---` fenced YAML header from the body.

    Returns an empty mapping when there is no header. Raises yaml.YAMLError for a
    header that is present but malformed so the caller can report the file.
    """
    match = FRONT_MATTER_PATTERN.match(text)
    if not match:
        return {}, text
    meta = yaml.safe_load(match.group(1)) or {}
    if not isinstance(meta, dict):
        raise yaml.YAMLError("front matter must be a mapping")
    return meta, text[match.end():]


def slugify(text: str, max_length: int = 60) -> str:
    slug = "-".join(TOKEN_PATTERN.findall(text.lower()))
    return slug[:max_length].strip("-") or "untitled"
