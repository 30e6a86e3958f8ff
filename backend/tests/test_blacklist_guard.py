import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from attribution.errors import AttributionNotFoundError
from attribution.services.blacklist_guard import BlacklistGuard
from attribution.services.memory_repository import InMemoryAttributionRepository
from attribution.services.sqlite_repository import SqliteAttributionRepository


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryAttributionRepository()
    return SqliteAttributionRepository(db_path=str(tmp_path / "blacklist.sqlite3"))


def test_two_consecutive_refusals_blacklist(repo):
    guard = BlacklistGuard(repo, threshold=2)

    assert guard.record_refusal("prov_1", "att_a#1") is False
    assert guard.is_blacklisted("prov_1") is False
    assert guard.record_refusal("prov_1", "att_b#1") is True

    assert guard.is_blacklisted("prov_1") is True
    assert guard.reason("prov_1") == "2 consecutive refusals"
    assert guard.blacklisted_ids() == {"prov_1"}
    entry = guard.get_entry("prov_1")
    assert entry.total_refusal_count == 2
    assert entry.blacklisted_at is not None


def test_refuse_then_accept_never_blacklists(repo):
    guard = BlacklistGuard(repo, threshold=2)

    for round_no in range(5):
        assert guard.record_refusal("prov_1", f"att_{round_no}#1") is False
        guard.record_acceptance("prov_1")

    entry = guard.get_entry("prov_1")
    assert entry.consecutive_refusal_count == 0
    assert entry.total_refusal_count == 5
    assert guard.is_blacklisted("prov_1") is False


def test_same_round_counted_once(repo):
    guard = BlacklistGuard(repo, threshold=2)

    guard.record_refusal("prov_1", "att_a#1")
    guard.record_refusal("prov_1", "att_a#1")

    assert guard.get_entry("prov_1").consecutive_refusal_count == 1
    assert guard.is_blacklisted("prov_1") is False


def test_lift_clears_counter(repo):
    guard = BlacklistGuard(repo, threshold=2)
    guard.record_refusal("prov_1", "att_a#1")
    guard.record_refusal("prov_1", "att_b#1")

    lifted = guard.lift("prov_1")

    assert lifted.is_active is False
    assert lifted.consecutive_refusal_count == 0
    assert guard.list_entries() == []
    assert [e.provider_id for e in guard.list_entries(active_only=False)] == ["prov_1"]
    # One more refusal after a lift is not enough for a new ban.
    assert guard.record_refusal("prov_1", "att_c#1") is False


def test_lift_without_active_entry_raises(repo):
    guard = BlacklistGuard(repo)
    with pytest.raises(AttributionNotFoundError):
        guard.lift("prov_unknown")


def test_refusal_without_round_key_always_counts(repo):
    guard = BlacklistGuard(repo, threshold=3)
    guard.record_refusal("prov_1")
    guard.record_refusal("prov_1")
    assert guard.get_entry("prov_1").consecutive_refusal_count == 2


def test_cancellation_blacklists_at_once(repo):
    guard = BlacklistGuard(repo, threshold=2)
    guard.record_refusal("prov_1", "att_a#1")
    guard.record_acceptance("prov_1")

    assert guard.record_cancellation("prov_1", "att_b#1") is True

    entry = guard.get_entry("prov_1")
    assert entry.is_active is True
    assert entry.reason == "cancelled an accepted mission"
    assert entry.consecutive_refusal_count == 2
    assert entry.total_refusal_count == 2
    assert guard.blacklisted_ids() == {"prov_1"}


def test_cancellation_of_a_counted_round_keeps_totals(repo):
    guard = BlacklistGuard(repo, threshold=3)
    guard.record_refusal("prov_1", "att_a#1")
    guard.record_refusal("prov_1", "att_b#1")

    assert guard.record_cancellation("prov_1", "att_b#1") is True

    entry = guard.get_entry("prov_1")
    assert entry.consecutive_refusal_count == 3
    assert entry.total_refusal_count == 2
    guard.lift("prov_1")
    assert guard.is_blacklisted("prov_1") is False
