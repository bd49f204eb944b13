"""
Tests: ball-in-court routing after the HOD decision.

Covers every outcome × prior-recommendation bucket × contractor-present
combination.
"""

import pytest

from wirflow.core.exceptions import InvariantViolation
from wirflow.services.wir_lifecycle import next_bic

ROUTES = [
    # outcome, prior recommendation, routes to contractor?
    ("APPROVE", "APPROVE_WITH_COMMENTS", True),
    ("APPROVE", "APPROVE", False),
    ("APPROVE", "REJECT", False),
    ("APPROVE", None, False),
    ("REJECT", "APPROVE_WITH_COMMENTS", True),
    ("REJECT", "APPROVE", True),
    ("REJECT", "REJECT", True),
    ("REJECT", None, True),
]


@pytest.mark.parametrize("outcome, prior, to_contractor", ROUTES)
@pytest.mark.parametrize("contractor_id", ["C1", None])
def test_next_bic_table(outcome, prior, to_contractor, contractor_id):
    expected = contractor_id if to_contractor else None
    assert next_bic(outcome, prior, contractor_id) == expected


def test_approve_with_comments_returns_to_contractor():
    assert next_bic("APPROVE", "APPROVE_WITH_COMMENTS", "C1") == "C1"


def test_plain_approve_closes_the_ball():
    assert next_bic("APPROVE", "APPROVE", "C1") is None


def test_unknown_outcome_is_rejected():
    with pytest.raises(InvariantViolation):
        next_bic("MAYBE", "APPROVE", "C1")
