import pytest

from processing.topics import canonical_lookup, canonical_topic, group_similar_topics, topics_match


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Unpaid Invoices", "unpaid_invoice"),
        ("unpaid_invoicing", "unpaid_invoice"),
        ("Client Payments", "customer_payment"),
        ("small_business_taxes", "small_business_tax"),
        ("status_pages", "status_page"),
        ("insurance policies", "insurance_policy"),
        ("App Apps", "application"),
        ("!!!", ""),
    ],
)
def test_canonical_topic(raw, expected):
    assert canonical_topic(raw) == expected


def test_topics_match_on_shared_words():
    assert topics_match("late_payments", "Late Payment")
    assert topics_match("late_client_payment", "late_payment")
    assert not topics_match("late_payment", "late_payments_from_customers")
    assert not topics_match("payroll", "")


def test_group_similar_topics_keys_by_shortest_form():
    groups = group_similar_topics([
        "unpaid_invoices",
        "Unpaid Invoice",
        "late_payment",
        "late_payments_from_customers",
        "rental_bond",
        "unpaid_invoices",
        "???",
    ])

    assert groups == {
        "unpaid_invoice": ["Unpaid Invoice", "unpaid_invoices"],
        "late_payment": ["late_payment"],
        "late_payment_from_customer": ["late_payments_from_customers"],
        "rental_bond": ["rental_bond"],
    }


def test_canonical_lookup_is_order_independent():
    topics = ["unpaid_invoicing", "Unpaid Invoices", "payroll"]
    assert canonical_lookup(topics) == canonical_lookup(reversed(topics)) == {
        "Unpaid Invoices": "unpaid_invoice",
        "unpaid_invoicing": "unpaid_invoice",
        "payroll": "payroll",
    }
