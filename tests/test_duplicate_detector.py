from datetime import UTC, datetime, timedelta

import pytest

from src.qapilot.domain.models import PriorTicket
from src.qapilot.services.duplicate_detector import DuplicateDetector, summary_similarity, tokens


def _prior(key, summary, module=None, issue_type=None, age_days=None):
    created = None
    if age_days is not None:
        created = datetime(2024, 5, 1, tzinfo=UTC) - timedelta(days=age_days)
    return PriorTicket(key=key, summary=summary, module=module, issue_type=issue_type, created_at=created)


def test_tokens_drop_stop_words_and_short_tokens():
    assert tokens("The app is crashing on Login") == frozenset({"crashing", "login"})


def test_identical_summary_and_module_scores_at_least_090():
    detector = DuplicateDetector()
    ranked = detector.score(
        "Login button does nothing on tap",
        [_prior("QA-9", "Login button does nothing on tap", module="Login", issue_type="Task")],
        module="login",
        issue_type="Bug",
    )
    assert len(ranked) == 1
    assert ranked[0].score >= 0.9


def test_full_match_scores_one():
    detector = DuplicateDetector()
    ranked = detector.score(
        "Checkout total is wrong",
        [_prior("QA-3", "checkout total is WRONG", module="Payment", issue_type="Bug")],
        module="Payment",
        issue_type="Bug",
    )
    assert ranked[0].score == pytest.approx(1.0)
    assert detector.likely(ranked) == ranked


def test_unrelated_priors_fall_below_floor():
    detector = DuplicateDetector()
    ranked = detector.score(
        "Profile photo upload fails",
        [_prior("QA-1", "Dark mode colours are inverted", module="Settings")],
        module="Profile",
    )
    assert ranked == []


def test_ranking_is_by_score_then_key():
    detector = DuplicateDetector(floor=0.1)
    priors = [
        _prior("QA-20", "Search results empty for valid query"),
        _prior("QA-10", "Search results empty for valid query"),
        _prior("QA-5", "Search results slow"),
    ]
    ranked = detector.score("Search results empty for valid query", priors)
    assert [c.key for c in ranked] == ["QA-10", "QA-20", "QA-5"]
    assert ranked[0].score == ranked[1].score


def test_only_the_most_recent_window_is_compared():
    detector = DuplicateDetector(window=2, floor=0.1)
    priors = [
        _prior("QA-OLD", "Cart badge count wrong", age_days=30),
        _prior("QA-NEW", "Unrelated crash in settings", age_days=1),
        _prior("QA-MID", "Payment form freezes", age_days=5),
    ]
    ranked = detector.score("Cart badge count wrong", priors)
    assert "QA-OLD" not in [c.key for c in ranked]


def test_similarity_of_summaries_without_tokens():
    assert summary_similarity("!!", "!!") == 1.0
    assert summary_similarity("!!", "?") == 0.0


def test_window_must_be_positive():
    with pytest.raises(ValueError):
        DuplicateDetector(window=0)
