import pytest

from processing.prefilter import (
    is_likely_english,
    is_relevant_content,
    keyword_match,
    matches_region,
    normalize_topic,
)


def test_english_detection():
    assert is_likely_english("I have been trying to find a way to pay my team on time")
    assert not is_likely_english("Ich habe versucht, meine Rechnungen rechtzeitig zu bezahlen")
    assert not is_likely_english("")


@pytest.mark.parametrize(
    "text,expected",
    [
        (None, False),
        ("   ", False),
        ("too short", False),
        ("https://example.com/some/really/long/path/that/goes/on/and/on/forever", False),
        ("Every month I lose a full day reconciling receipts against bank statements", True),
    ],
)
def test_relevant_content(text, expected):
    assert is_relevant_content(text, min_length=50) is expected


def test_keyword_match_is_case_insensitive():
    assert keyword_match("Switched from XERO last year", ["xero"])
    assert not keyword_match("Switched from MYOB last year", ["xero"])


def test_region_match_by_source_or_term():
    region = {"region_sources": ["melbourne"], "region_terms": ["ato", "tradie"]}
    assert matches_region("anything", "Melbourne", **region)
    assert matches_region("The ATO sent me another letter", "smallbusiness", **region)
    # whole words only
    assert not matches_region("I have a potato farm", "smallbusiness", **region)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Small Business Tax", "small_business_tax"),
        ("  invoicing ", "invoicing"),
        ("B2B SaaS!", "b2b_saas"),
        ("!!!", ""),
    ],
)
def test_normalize_topic(raw, expected):
    assert normalize_topic(raw) == expected
