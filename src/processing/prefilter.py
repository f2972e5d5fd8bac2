import re
from typing import Iterable, Optional

# Frequent function words; real English prose hits these constantly
COMMON_ENGLISH_WORDS = frozenset("""
the and is it to of a in that for you with on are be this have was but not they from at
or by we an can my all has do if will one their what so up out about who get which me when
your how its like just know take people into could than them way been first would over such
these because through being also back after most make where other then some her him see now
only come made find here thing give many new still very well those both feel before right
look off any same our say even want again need each between work might while under few
another more down much should never life around something without against last really
always things every since too does may cannot little went did going part once place better
big lot i im i'm don't dont it's
""".split())

_LOW_EFFORT = re.compile(
    r"^(lol|lmao|haha|nice|this|same|yes|no|agreed|exactly|thanks|\[removed\]|\[deleted\])\.?$",
    re.IGNORECASE,
)
_LINK_ONLY = re.compile(r"^https?://\S+$", re.IGNORECASE)
_WORD = re.compile(r"[a-zA-Z']+")


def is_likely_english(text: str, min_ratio: float = 0.2) -> bool:
    """More than min_ratio of the words are common English words."""
    if not text:
        return False
    words = text.split()
    if not words:
        return False
    hits = sum(1 for w in _WORD.findall(text) if w.lower() in COMMON_ENGLISH_WORDS)
    return hits / len(words) > min_ratio


def is_relevant_content(text: Optional[str], min_length: int = 50) -> bool:
    """Cheap ingest-time check that drops deleted, link-only and low-effort text."""
    if not text:
        return False
    stripped = text.strip()
    if len(stripped) < min_length:
        return False
    if _LOW_EFFORT.match(stripped) or _LINK_ONLY.match(stripped):
        return False
    return True


def keyword_match(text: str, keywords: Iterable[str]) -> bool:
    text = text.lower()
    return any(k.lower() in text for k in keywords)


def matches_region(
    text: str,
    source_id: Optional[str],
    *,
    region_sources: Iterable[str],
    region_terms: Iterable[str],
) -> bool:
    """True when the source is a regional community or the text names the region."""
    if source_id and source_id.lower() in {s.lower() for s in region_sources}:
        return True
    terms = [re.escape(t.lower()) for t in region_terms if t]
    if not terms or not text:
        return False
    return re.search(r"\b(" + "|".join(terms) + r")\b", text.lower()) is not None


def normalize_topic(topic: str) -> str:
    """'Small Business Tax' -> 'small_business_tax'"""
    topic = re.sub(r"\s+", "_", topic.strip().lower())
    return re.sub(r"[^a-z0-9_]", "", topic).strip("_")
