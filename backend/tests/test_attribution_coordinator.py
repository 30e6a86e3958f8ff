import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from attribution.errors import AttributionConflictError, AttributionNotFoundError, AttributionValidationError
from attribution.models import PaymentSucceededEvent, Provider
from attribution.services.blacklist_guard import BlacklistGuard
from attribution.services.coordinator import AttributionCoordinator
from attribution.services.geo_matcher import GeoMatcher
from attribution.services.memory_repository import InMemoryAttributionRepository
from attribution.services.notification_dispatcher import NotificationDispatcher
from attribution.services.sqlite_repository import SqliteAttributionRepository

LYON = (45.7578, 4.8320)
VILLEURBANNE = (45.7719, 4.8902)
PARIS = (48.8566, 2.3522)
MARSEILLE = (43.2965, 5.3698)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now = self.now + timedelta(minutes=minutes)


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self._lock = threading.Lock()
        self.sent = []

    def notify(self, recipient_id, notice):
        with self._lock:
            self.sent.append((recipient_id, notice))

    def kinds_for(self, recipient_id):
        return [notice.kind for rid, notice in self.sent if rid == recipient_id]


class ExplodingDispatcher(NotificationDispatcher):
    def notify(self, recipient_id, notice):
        raise RuntimeError("push gateway down")


def _provider(provider_id, point, **overrides):
    values = {
        "id": provider_id,
        "latitude": point[0],
        "longitude": point[1],
        "service_types": ["moving"],
        "verified": True,
        "available": True,
    }
    values.update(overrides)
    return Provider(**values)


def _engine(repo=None, dispatcher=None, threshold=2):
    repo = repo or InMemoryAttributionRepository()
    clock = FakeClock()
    blacklist = BlacklistGuard(repo, threshold=threshold)
    geo = GeoMatcher(repo, blacklist, default_max_distance_km=150.0)
    dispatcher = dispatcher or RecordingDispatcher()
    coordinator = AttributionCoordinator(
        repository=repo,
        geo_matcher=geo,
        blacklist=blacklist,
        dispatcher=dispatcher,
        round_ttl_minutes=120,
        clock=clock,
    )
    return coordinator, repo, dispatcher, clock


def _seed_lyon(repo):
    repo.save_provider(_provider("prov_lyon", (45.7600, 4.8400)))
    repo.save_provider(_provider("prov_villeurbanne", VILLEURBANNE))
    repo.save_provider(_provider("prov_paris", PARIS))
    repo.save_provider(_provider("prov_unverified", LYON, verified=False))


def test_lyon_end_to_end():
    coordinator, repo, dispatcher, _ = _engine()
    _seed_lyon(repo)

    started = coordinator.handle_payment_succeeded(
        PaymentSucceededEvent(
            service_request_id="req_1",
            service_type="moving",
            latitude=LYON[0],
            longitude=LYON[1],
            amount=420.0,
        )
    )

    assert started.outcome == "broadcasting"
    assert started.eligible_count == 2
    assert started.broadcast_count == 1
    invited = [rid for rid, notice in dispatcher.sent if notice.kind == "invitation"]
    assert invited == ["prov_lyon", "prov_villeurbanne"]
    assert dispatcher.kinds_for("prov_paris") == []

    won = coordinator.handle_acceptance(started.attribution_id, "prov_villeurbanne")
    lost = coordinator.handle_acceptance(started.attribution_id, "prov_lyon")

    assert won.success is True
    assert won.outcome == "accepted"
    assert won.attribution.accepted_provider_id == "prov_villeurbanne"
    assert lost.success is False
    assert lost.outcome == "already_attributed"

    assert repo.get_service_request("req_1").assigned_provider_id == "prov_villeurbanne"
    assert repo.get_service_request("req_1").amount == 420.0
    outcomes = {r.provider_id: r.outcome for r in coordinator.list_responses(started.attribution_id)}
    assert outcomes == {"prov_lyon": "superseded", "prov_villeurbanne": "accepted"}
    assert "mission_confirmed" in dispatcher.kinds_for("prov_villeurbanne")
    assert "mission_taken" in dispatcher.kinds_for("prov_lyon")


def test_start_rejects_invalid_input_and_duplicates():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)

    with pytest.raises(AttributionValidationError):
        coordinator.start("req_1", "gardening", *LYON)
    with pytest.raises(AttributionValidationError):
        coordinator.start("req_1", "moving", 95.0, 4.8)
    with pytest.raises(AttributionValidationError):
        coordinator.start("  ", "moving", *LYON)

    coordinator.start("req_1", "moving", *LYON)
    with pytest.raises(AttributionConflictError):
        coordinator.start("req_1", "moving", *LYON)


def test_no_eligible_providers_expires_and_escalates():
    coordinator, repo, dispatcher, _ = _engine()
    _seed_lyon(repo)

    started = coordinator.start("req_marseille", "moving", *MARSEILLE)

    assert started.outcome == "no_eligible_providers"
    assert started.eligible_count == 0
    assert started.status == "expired"
    assert dispatcher.kinds_for("operations") == ["no_eligible_providers"]
    # Expired attributions free the request for a new one.
    assert coordinator.start("req_marseille", "moving", *MARSEILLE, max_distance_km=400).eligible_count == 2


@pytest.mark.parametrize("store", ["memory", "sqlite"])
def test_concurrent_acceptance_has_single_winner(store, tmp_path):
    repo = (
        InMemoryAttributionRepository()
        if store == "memory"
        else SqliteAttributionRepository(db_path=str(tmp_path / "race.sqlite3"))
    )
    coordinator, repo, _, _ = _engine(repo=repo)
    provider_ids = [f"prov_{idx}" for idx in range(8)]
    for idx, provider_id in enumerate(provider_ids):
        repo.save_provider(_provider(provider_id, (LYON[0] + idx * 0.001, LYON[1])))
    started = coordinator.start("req_race", "moving", *LYON)
    assert started.eligible_count == len(provider_ids)

    barrier = threading.Barrier(len(provider_ids))

    def accept(provider_id):
        barrier.wait()
        return provider_id, coordinator.handle_acceptance(started.attribution_id, provider_id)

    with ThreadPoolExecutor(max_workers=len(provider_ids)) as pool:
        results = list(pool.map(accept, provider_ids))

    winners = [pid for pid, outcome in results if outcome.success]
    losers = [outcome.outcome for pid, outcome in results if not outcome.success]
    assert len(winners) == 1
    assert losers == ["already_attributed"] * (len(provider_ids) - 1)

    final = coordinator.get_attribution(started.attribution_id)
    assert final.status == "attributed"
    assert final.accepted_provider_id == winners[0]
    assert repo.get_service_request("req_race").assigned_provider_id == winners[0]


def test_winner_retry_is_idempotent():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)

    first = coordinator.handle_acceptance(started.attribution_id, "prov_lyon")
    repo.set_assigned_provider("req_1", None)
    again = coordinator.handle_acceptance(started.attribution_id, "prov_lyon")

    assert first.success and again.success
    assert again.outcome == "accepted"
    assert repo.get_service_request("req_1").assigned_provider_id == "prov_lyon"


def test_uninvited_provider_cannot_accept():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)

    outcome = coordinator.handle_acceptance(started.attribution_id, "prov_paris")

    assert outcome.success is False
    assert outcome.outcome == "not_invited"
    with pytest.raises(AttributionNotFoundError):
        coordinator.handle_acceptance("att_missing", "prov_lyon")


def test_cancellation_rebroadcasts_with_exclusion(tmp_path):
    db_path = str(tmp_path / "cancel.sqlite3")
    coordinator, repo, dispatcher, _ = _engine(repo=SqliteAttributionRepository(db_path=db_path))
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)
    coordinator.handle_acceptance(started.attribution_id, "prov_lyon")

    cancelled = coordinator.handle_cancellation(started.attribution_id, "prov_lyon", reason="truck broke down")

    assert cancelled.success is True
    assert cancelled.outcome == "rebroadcasting"
    assert cancelled.broadcast_count == 2
    assert cancelled.eligible_count == 1

    reopened = SqliteAttributionRepository(db_path=db_path)
    current = reopened.get_attribution(started.attribution_id)
    assert current.status == "re_broadcasting"
    assert current.broadcast_count == 2
    assert current.accepted_provider_id is None
    assert "prov_lyon" in current.excluded_provider_ids
    assert reopened.get_service_request("req_1").assigned_provider_id is None
    banned = reopened.get_blacklist_entry("prov_lyon")
    assert banned.is_active is True
    assert banned.reason == "cancelled an accepted mission"
    assert "mission_cancelled" in dispatcher.kinds_for("prov_lyon")

    # The canceller is out of the new round; the other provider can take it.
    assert coordinator.handle_acceptance(started.attribution_id, "prov_lyon").outcome == "not_invited"
    second = coordinator.handle_acceptance(started.attribution_id, "prov_villeurbanne")
    assert second.success is True
    assert second.attribution.broadcast_count == 2


def test_cancellation_by_other_provider_is_rejected():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)

    assert coordinator.handle_cancellation(started.attribution_id, "prov_lyon").outcome == "not_available"
    coordinator.handle_acceptance(started.attribution_id, "prov_lyon")
    outcome = coordinator.handle_cancellation(started.attribution_id, "prov_villeurbanne")

    assert outcome.success is False
    assert outcome.outcome == "not_assigned"
    assert coordinator.get_attribution(started.attribution_id).broadcast_count == 1


def test_refusals_across_attributions_blacklist_provider():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)

    first = coordinator.start("req_1", "moving", *LYON)
    refused = coordinator.handle_refusal(first.attribution_id, "prov_lyon", reason="busy")
    assert refused.outcome == "refused"
    assert refused.provider_blacklisted is False
    duplicate = coordinator.handle_refusal(first.attribution_id, "prov_lyon")
    assert duplicate.success is True
    assert duplicate.outcome == "duplicate"
    assert repo.get_blacklist_entry("prov_lyon").consecutive_refusal_count == 1
    assert "prov_lyon" in coordinator.get_attribution(first.attribution_id).excluded_provider_ids

    second = coordinator.start("req_2", "moving", *LYON)
    assert coordinator.handle_refusal(second.attribution_id, "prov_lyon").provider_blacklisted is True

    third = coordinator.start("req_3", "moving", *LYON)
    assert third.eligible_count == 1
    invited = [r.provider_id for r in coordinator.list_responses(third.attribution_id)]
    assert invited == ["prov_villeurbanne"]


def test_refusal_then_acceptance_resets_counter():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)

    for idx in range(3):
        started = coordinator.start(f"req_{idx}", "moving", *LYON)
        coordinator.handle_refusal(started.attribution_id, "prov_lyon")
        accepted = coordinator.start(f"req_ok_{idx}", "moving", *LYON)
        assert coordinator.handle_acceptance(accepted.attribution_id, "prov_lyon").success is True

    assert repo.get_blacklist_entry("prov_lyon").is_active is False


def test_all_invitees_refusing_expires_attribution():
    coordinator, repo, dispatcher, _ = _engine()
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)

    assert coordinator.handle_refusal(started.attribution_id, "prov_lyon").attribution_expired is False
    last = coordinator.handle_refusal(started.attribution_id, "prov_villeurbanne")

    assert last.attribution_expired is True
    assert coordinator.get_attribution(started.attribution_id).status == "expired"
    assert dispatcher.kinds_for("operations") == ["attribution_expired"]
    late = coordinator.handle_refusal(started.attribution_id, "prov_lyon")
    assert late.outcome == "not_available"


def test_round_timeout_beats_late_acceptance():
    coordinator, repo, dispatcher, clock = _engine()
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)

    clock.advance(120)
    outcome = coordinator.handle_acceptance(started.attribution_id, "prov_lyon")

    assert outcome.success is False
    assert outcome.outcome == "expired"
    assert coordinator.get_attribution(started.attribution_id).status == "expired"
    assert {r.outcome for r in coordinator.list_responses(started.attribution_id)} == {"timed_out"}
    assert dispatcher.kinds_for("operations") == ["attribution_expired"]
    assert repo.get_service_request("req_1").assigned_provider_id is None


def test_acceptance_just_before_deadline_wins():
    coordinator, repo, _, clock = _engine()
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)

    clock.advance(119)
    assert coordinator.handle_acceptance(started.attribution_id, "prov_lyon").success is True
    clock.advance(5)
    assert coordinator.expire_due() == []
    assert coordinator.get_attribution(started.attribution_id).status == "attributed"


def test_expire_due_sweeps_only_overdue_rounds():
    coordinator, repo, _, clock = _engine()
    _seed_lyon(repo)
    early = coordinator.start("req_early", "moving", *LYON)
    clock.advance(60)
    late = coordinator.start("req_late", "moving", *LYON)

    clock.advance(61)
    assert coordinator.expire_due() == [early.attribution_id]
    assert coordinator.get_attribution(late.attribution_id).status == "broadcasting"
    assert coordinator.expire_due() == []


def test_failing_notifications_do_not_undo_transitions():
    coordinator, repo, _, _ = _engine(dispatcher=ExplodingDispatcher())
    _seed_lyon(repo)

    started = coordinator.start("req_1", "moving", *LYON)
    accepted = coordinator.handle_acceptance(started.attribution_id, "prov_lyon")

    assert started.outcome == "broadcasting"
    assert accepted.success is True
    assert coordinator.get_attribution(started.attribution_id).status == "attributed"


def test_complete_and_admin_cancel():
    coordinator, repo, dispatcher, _ = _engine()
    _seed_lyon(repo)
    done = coordinator.start("req_done", "moving", *LYON)
    coordinator.handle_acceptance(done.attribution_id, "prov_lyon")

    assert coordinator.complete(done.attribution_id, "prov_villeurbanne").outcome == "not_assigned"
    assert coordinator.complete(done.attribution_id, "prov_lyon").success is True
    assert coordinator.get_attribution(done.attribution_id).status == "completed"
    with pytest.raises(AttributionConflictError):
        coordinator.cancel(done.attribution_id)

    pending = coordinator.start("req_pending", "moving", *LYON)
    cancelled = coordinator.cancel(pending.attribution_id, reason="customer refund")
    assert cancelled.status == "cancelled"
    assert {r.outcome for r in coordinator.list_responses(pending.attribution_id)} == {"superseded"}
    assert coordinator.handle_acceptance(pending.attribution_id, "prov_lyon").outcome == "not_available"


def test_stats_and_provider_history():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)
    first = coordinator.start("req_1", "moving", *LYON)
    coordinator.handle_acceptance(first.attribution_id, "prov_lyon")
    coordinator.handle_cancellation(first.attribution_id, "prov_lyon")
    coordinator.start("req_2", "moving", *LYON)
    coordinator.start("req_3", "moving", *MARSEILLE)

    stats = coordinator.stats()

    assert stats.total == 3
    assert stats.active == 2
    assert stats.expired == 1
    assert stats.rebroadcast_rate == round(1 / 3, 4)
    assert stats.average_broadcast_count == round(4 / 3, 4)
    # The cancellation banned prov_lyon, so req_2 never reached them.
    history = coordinator.list_provider_history("prov_lyon")
    assert [h.outcome for h in history] == ["accepted"]


def test_lyon_accept_cancel_rebroadcast_scenario():
    coordinator, repo, _, _ = _engine()
    repo.save_provider(_provider("prov_lyon", LYON))
    repo.save_provider(_provider("prov_villeurbanne", VILLEURBANNE))
    repo.save_provider(_provider("prov_paris", PARIS))
    repo.save_provider(_provider("prov_marseille", MARSEILLE))
    geo = GeoMatcher(repo, BlacklistGuard(repo), default_max_distance_km=150.0)

    assert [p.provider_id for p in geo.find_eligible("moving", *LYON)] == ["prov_lyon", "prov_villeurbanne"]

    started = coordinator.start("req_lyon", "moving", *LYON, max_distance_km=150)
    assert coordinator.handle_acceptance(started.attribution_id, "prov_lyon").success is True
    late = coordinator.handle_acceptance(started.attribution_id, "prov_villeurbanne")
    assert late.outcome == "already_attributed"

    coordinator.handle_cancellation(started.attribution_id, "prov_lyon")

    current = coordinator.get_attribution(started.attribution_id)
    assert current.status == "re_broadcasting"
    assert current.accepted_provider_id is None
    assert current.excluded_provider_ids == frozenset({"prov_lyon"})
    assert current.broadcast_count == 2
    remaining = geo.find_eligible("moving", *LYON, excluded_ids=current.excluded_provider_ids)
    assert [p.provider_id for p in remaining] == ["prov_villeurbanne"]


class _AcceptDuringInvitationCheck(InMemoryAttributionRepository):
    """Runs a hook once, right after the next invitation lookup."""

    def __init__(self):
        super().__init__()
        self.after_invitation_check = None

    def get_response(self, attribution_id, round, provider_id):
        response = super().get_response(attribution_id, round, provider_id)
        hook, self.after_invitation_check = self.after_invitation_check, None
        if hook is not None:
            hook()
        return response


def test_cancellation_blacklists_provider_immediately():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)
    coordinator.handle_acceptance(started.attribution_id, "prov_lyon")

    coordinator.handle_cancellation(started.attribution_id, "prov_lyon")

    entry = repo.get_blacklist_entry("prov_lyon")
    assert entry.is_active is True
    assert entry.consecutive_refusal_count == 2
    assert entry.reason == "cancelled an accepted mission"
    other = coordinator.start("req_2", "moving", *LYON)
    assert [r.provider_id for r in coordinator.list_responses(other.attribution_id)] == ["prov_villeurbanne"]


def test_cancellation_with_nobody_left_reports_expiry():
    coordinator, repo, dispatcher, _ = _engine()
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)
    coordinator.handle_refusal(started.attribution_id, "prov_villeurbanne")
    coordinator.handle_acceptance(started.attribution_id, "prov_lyon")

    cancelled = coordinator.handle_cancellation(started.attribution_id, "prov_lyon")

    assert cancelled.success is True
    assert cancelled.outcome == "no_eligible_providers"
    assert cancelled.attribution_expired is True
    assert cancelled.eligible_count == 0
    assert cancelled.broadcast_count == 2
    assert coordinator.get_attribution(started.attribution_id).status == "expired"
    assert dispatcher.kinds_for("operations") == ["no_eligible_providers"]


def test_duplicate_payment_leaves_assigned_request_untouched():
    coordinator, repo, _, _ = _engine()
    _seed_lyon(repo)
    event = PaymentSucceededEvent(
        service_request_id="req_1",
        service_type="moving",
        latitude=LYON[0],
        longitude=LYON[1],
        amount=420.0,
    )
    started = coordinator.handle_payment_succeeded(event)
    coordinator.handle_acceptance(started.attribution_id, "prov_lyon")

    with pytest.raises(AttributionConflictError):
        coordinator.handle_payment_succeeded(event.model_copy(update={"latitude": 45.0, "amount": 99.0}))

    request = repo.get_service_request("req_1")
    assert request.assigned_provider_id == "prov_lyon"
    assert request.latitude == LYON[0]
    assert request.amount == 420.0


def test_refusal_losing_to_acceptance_is_not_counted():
    repo = _AcceptDuringInvitationCheck()
    coordinator, repo, _, _ = _engine(repo=repo)
    _seed_lyon(repo)
    started = coordinator.start("req_1", "moving", *LYON)
    repo.after_invitation_check = lambda: coordinator.handle_acceptance(started.attribution_id, "prov_villeurbanne")

    refused = coordinator.handle_refusal(started.attribution_id, "prov_lyon", reason="busy")

    assert refused.success is False
    assert refused.outcome == "not_available"
    assert repo.get_blacklist_entry("prov_lyon") is None
    outcomes = {r.provider_id: r.outcome for r in coordinator.list_responses(started.attribution_id)}
    assert outcomes == {"prov_lyon": "superseded", "prov_villeurbanne": "accepted"}
    assert coordinator.get_attribution(started.attribution_id).accepted_provider_id == "prov_villeurbanne"
