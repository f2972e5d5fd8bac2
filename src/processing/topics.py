"""
Topic canonicalisation: folds plural forms and common synonyms so that
"unpaid_invoices", "Unpaid Invoice" and "unpaid_invoicing" count as one topic.
"""
from typing import Dict, Iterable, List

from processing.prefilter import normalize_topic

SYNONYMS = {
    "client": "customer",
    "clients": "customer",
    "customers": "customer",
    "user": "customer",
    "users": "customer",
    "buyer": "customer",
    "buyers": "customer",
    "consumer": "customer",
    "consumers": "customer",
    "payments": "payment",
    "paying": "payment",
    "billing": "payment",
    "invoicing": "invoice",
    "invoices": "invoice",
    "job": "work",
    "jobs": "work",
    "freelance": "freelancing",
    "freelancer": "freelancing",
    "freelancers": "freelancing",
    "scheduling": "schedule",
    "booking": "schedule",
    "bookings": "schedule",
    "appointment": "schedule",
    "appointments": "schedule",
    "app": "application",
    "apps": "application",
    "software": "application",
    "tool": "application",
    "tools": "application",
    "company": "business",
    "companies": "business",
    "businesses": "business",
    "startup": "business",
    "startups": "business",
    "docs": "documentation",
    "issue": "problem",
    "issues": "problem",
    "wfh": "remote",
}

# merge threshold on shared words
MATCH_JACCARD = 0.6


def _singular(word: str) -> str:
    if len(word) <= 3 or word.endswith(("ss", "us", "is")):
        return word
    if word.endswith("ies"):
        return word[:-3] + "y"
    if word.endswith(("xes", "ches", "shes", "sses")):
        return word[:-2]
    if word.endswith("s"):
        return word[:-1]
    return word


def _canonical_word(word: str) -> str:
    if word in SYNONYMS:
        return SYNONYMS[word]
    singular = _singular(word)
    return SYNONYMS.get(singular, singular)


def canonical_topic(topic: str) -> str:
    """'Unpaid Invoices' -> 'unpaid_invoice'"""
    words = [_canonical_word(w) for w in normalize_topic(topic).split("_") if w]
    deduped: List[str] = []
    for word in words:
        if not deduped or deduped[-1] != word:
            deduped.append(word)
    return "_".join(deduped)


def topics_match(a: str, b: str) -> bool:
    first, second = canonical_topic(a), canonical_topic(b)
    if not first or not second:
        return False
    if first == second:
        return True
    words_a, words_b = set(first.split("_")), set(second.split("_"))
    return len(words_a & words_b) / len(words_a | words_b) > MATCH_JACCARD


def group_similar_topics(topics: Iterable[str]) -> Dict[str, List[str]]:
    """
    Greedy grouping by topics_match. Each group is keyed by its shortest
    canonical form. Input order does not matter.
    """
    pending = sorted({t for t in topics if canonical_topic(t)})
    groups: Dict[str, List[str]] = {}
    assigned = set()

    for topic in pending:
        if topic in assigned:
            continue
        similar = [t for t in pending if t not in assigned and topics_match(topic, t)]
        canonical = min((canonical_topic(t) for t in similar), key=lambda c: (len(c), c))
        groups.setdefault(canonical, []).extend(similar)
        assigned.update(similar)

    return groups


def canonical_lookup(topics: Iterable[str]) -> Dict[str, str]:
    """Map every topic to the key of the group it landed in."""
    return {
        topic: canonical
        for canonical, members in group_similar_topics(topics).items()
        for topic in members
    }
