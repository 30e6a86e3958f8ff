"""Dispatch of paid service requests to independent providers.

An attribution is one dispatch round for one service request. Providers race
to accept it; the first conditional write wins and every later attempt gets a
typed ``already_attributed`` outcome. A provider cancelling an accepted
mission puts the same attribution back into broadcast with that provider
excluded.

Only validation and infrastructure failures raise. Everything a provider can
legitimately run into (late accept, duplicate refusal, expired round) comes
back as an outcome model.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from attribution.errors import AttributionConflictError, AttributionNotFoundError, AttributionValidationError
from attribution.models import (
    ACTIVE_STATUSES,
    BROADCASTING_STATUSES,
    AcceptanceOutcome,
    Attribution,
    AttributionStats,
    CancellationOutcome,
    CompletionOutcome,
    EligibilityResponse,
    PaymentSucceededEvent,
    RefusalOutcome,
    ServiceRequest,
    StartOutcome,
)
from attribution.services.blacklist_guard import BlacklistGuard
from attribution.services.geo_matcher import GeoMatcher, validate_location
from attribution.services.notification_dispatcher import NotificationDispatcher, OutboundNotice
from attribution.services.repository import AttributionChanges, AttributionGuard, AttributionRepository, ResponseInvite

logger = logging.getLogger(__name__)

SERVICE_LABELS = {
    "moving": "Moving",
    "cleaning": "Cleaning",
    "packing": "Packing",
    "delivery": "Delivery",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttributionCoordinator:
    def __init__(
        self,
        repository: AttributionRepository,
        geo_matcher: GeoMatcher,
        blacklist: BlacklistGuard,
        dispatcher: NotificationDispatcher,
        round_ttl_minutes: int = 120,
        operations_recipient_id: str = "operations",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._repository = repository
        self._geo = geo_matcher
        self._blacklist = blacklist
        self._dispatcher = dispatcher
        self._round_ttl = timedelta(minutes=round_ttl_minutes)
        self._operations_recipient_id = operations_recipient_id
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    # Helpers

    def _log_event(self, event: str, attribution: Attribution, **fields) -> None:
        payload = {
            "event": event,
            "attribution_id": attribution.id,
            "service_request_id": attribution.service_request_id,
            "status": attribution.status,
            "broadcast_count": attribution.broadcast_count,
            **fields,
        }
        logger.info("attribution_event=%s", json.dumps(payload, sort_keys=True, default=str))

    def _notify(self, recipient_id: str, notice: OutboundNotice) -> None:
        try:
            self._dispatcher.notify(recipient_id, notice)
        except Exception:
            logger.exception("Notification dispatch failed recipient_id=%s kind=%s", recipient_id, notice.kind)

    def _escalate(self, attribution: Attribution, kind: str, body: str) -> None:
        self._notify(
            self._operations_recipient_id,
            OutboundNotice(
                kind=kind,  # type: ignore[arg-type]
                title="Manual assignment needed",
                body=body,
                attribution_id=attribution.id,
                data={"service_request_id": attribution.service_request_id},
            ),
        )

    def _require(self, attribution_id: str) -> Attribution:
        attribution = self._repository.get_attribution(attribution_id)
        if attribution is None:
            raise AttributionNotFoundError("Attribution not found")
        return attribution

    def _round_invitees(self, attribution_id: str, round_no: int) -> List[EligibilityResponse]:
        return [row for row in self._repository.list_responses(attribution_id) if row.round == round_no]

    # Start and broadcast

    def handle_payment_succeeded(self, event: PaymentSucceededEvent) -> StartOutcome:
        # A replayed payment must not rewrite the request under a live attribution.
        request_id = (event.service_request_id or "").strip()
        active = self._repository.list_attributions(statuses=ACTIVE_STATUSES)
        if any(a.service_request_id == request_id for a in active):
            raise AttributionConflictError(f"Service request {request_id} already has an active attribution")
        self._repository.save_service_request(
            ServiceRequest(
                id=event.service_request_id,
                service_type=event.service_type,
                latitude=event.latitude,
                longitude=event.longitude,
                amount=event.amount,
                scheduled_date=event.scheduled_date,
            )
        )
        return self.start(
            service_request_id=event.service_request_id,
            service_type=event.service_type,
            lat=event.latitude,
            lng=event.longitude,
            max_distance_km=event.max_distance_km,
        )

    def start(
        self,
        service_request_id: str,
        service_type: str,
        lat: float,
        lng: float,
        max_distance_km: Optional[float] = None,
    ) -> StartOutcome:
        cleaned_request_id = (service_request_id or "").strip()
        if not cleaned_request_id:
            raise AttributionValidationError("service_request_id is required")
        radius = self._geo.default_max_distance_km if max_distance_km is None else float(max_distance_km)
        validate_location(service_type, lat, lng, radius)

        if self._repository.get_service_request(cleaned_request_id) is None:
            self._repository.save_service_request(
                ServiceRequest(id=cleaned_request_id, service_type=service_type, latitude=lat, longitude=lng)
            )

        now = self._now()
        attribution = self._repository.create_attribution(
            Attribution(
                id=f"att_{uuid4().hex[:10]}",
                service_request_id=cleaned_request_id,
                service_type=service_type,
                status="broadcasting",
                service_latitude=lat,
                service_longitude=lng,
                max_distance_km=radius,
                broadcast_count=1,
                round_expires_at=now + self._round_ttl,
                created_at=now,
                updated_at=now,
            )
        )
        self._log_event("started", attribution, service_type=service_type, max_distance_km=radius)
        return self._broadcast(attribution)

    def _broadcast(self, attribution: Attribution) -> StartOutcome:
        eligible = self._geo.find_eligible(
            attribution.service_type,
            attribution.service_latitude,
            attribution.service_longitude,
            attribution.max_distance_km,
            excluded_ids=attribution.excluded_provider_ids,
        )
        round_no = attribution.broadcast_count

        if not eligible:
            expired = self._repository.compare_and_swap_status(
                attribution.id,
                AttributionGuard(statuses=BROADCASTING_STATUSES, accepted_provider_id=None, broadcast_count=round_no),
                AttributionChanges(status="expired"),
            )
            current = expired or self._require(attribution.id)
            self._log_event("no_eligible_providers", current)
            if expired is not None:
                self._escalate(
                    current,
                    "no_eligible_providers",
                    f"No eligible provider within {current.max_distance_km:g} km for request {current.service_request_id}.",
                )
            return StartOutcome(
                attribution_id=current.id,
                status=current.status,
                eligible_count=0,
                broadcast_count=current.broadcast_count,
                outcome="no_eligible_providers",
            )

        self._repository.open_responses(
            attribution.id,
            round_no,
            [ResponseInvite(provider_id=p.provider_id, distance_km=p.distance_km) for p in eligible],
        )
        label = SERVICE_LABELS.get(attribution.service_type, attribution.service_type)
        for provider in eligible:
            self._notify(
                provider.provider_id,
                OutboundNotice(
                    kind="invitation",
                    title=f"New {label.lower()} mission available",
                    body=f"{label} mission {provider.distance_km:g} km from you. First to accept gets it.",
                    attribution_id=attribution.id,
                    data={"distance_km": f"{provider.distance_km:g}", "round": str(round_no)},
                ),
            )
        self._log_event(
            "broadcast",
            attribution,
            eligible_count=len(eligible),
            excluded_count=len(attribution.excluded_provider_ids),
        )
        return StartOutcome(
            attribution_id=attribution.id,
            status=attribution.status,
            eligible_count=len(eligible),
            broadcast_count=attribution.broadcast_count,
            outcome="broadcasting",
        )

    # Expiry

    def _expire(self, attribution: Attribution, now: datetime) -> Optional[Attribution]:
        expired = self._repository.compare_and_swap_status(
            attribution.id,
            AttributionGuard(
                statuses=BROADCASTING_STATUSES,
                accepted_provider_id=None,
                broadcast_count=attribution.broadcast_count,
                closed_at=now,
            ),
            AttributionChanges(status="expired"),
        )
        if expired is None:
            return None
        timed_out = self._repository.close_pending_responses(expired.id, expired.broadcast_count, "timed_out")
        self._log_event("expired", expired, reason="round_ttl", timed_out_count=len(timed_out))
        self._escalate(
            expired,
            "attribution_expired",
            f"Nobody accepted request {expired.service_request_id} in time; assign it manually.",
        )
        return expired

    def _expire_if_overdue(self, attribution: Attribution) -> Attribution:
        if attribution.status not in BROADCASTING_STATUSES or attribution.round_expires_at is None:
            return attribution
        now = self._now()
        if attribution.round_expires_at > now:
            return attribution
        return self._expire(attribution, now) or self._require(attribution.id)

    def _expire_if_exhausted(self, attribution_id: str, round_no: int) -> bool:
        if any(row.outcome == "pending" for row in self._round_invitees(attribution_id, round_no)):
            return False
        expired = self._repository.compare_and_swap_status(
            attribution_id,
            AttributionGuard(statuses=BROADCASTING_STATUSES, accepted_provider_id=None, broadcast_count=round_no),
            AttributionChanges(status="expired"),
        )
        if expired is None:
            return False
        self._log_event("expired", expired, reason="all_refused")
        self._escalate(
            expired,
            "attribution_expired",
            f"Every invited provider refused request {expired.service_request_id}; assign it manually.",
        )
        return True

    def expire_due(self, now: Optional[datetime] = None) -> List[str]:
        """Expire every broadcasting attribution whose round deadline has passed."""
        now = now or self._now()
        expired_ids: List[str] = []
        for attribution in self._repository.list_attributions(statuses=BROADCASTING_STATUSES):
            if attribution.round_expires_at is None or attribution.round_expires_at > now:
                continue
            if self._expire(attribution, now) is not None:
                expired_ids.append(attribution.id)
        if expired_ids:
            logger.info("Expiry sweep expired %d attributions", len(expired_ids))
        return expired_ids

    # Provider responses

    def handle_acceptance(self, attribution_id: str, provider_id: str) -> AcceptanceOutcome:
        attribution = self._expire_if_overdue(self._require(attribution_id))

        if attribution.status not in BROADCASTING_STATUSES:
            return self._acceptance_rejected(attribution, provider_id)
        if provider_id in attribution.excluded_provider_ids:
            return AcceptanceOutcome(
                success=False,
                outcome="not_invited",
                message="You can no longer accept this mission",
            )
        invitation = self._repository.get_response(attribution.id, attribution.broadcast_count, provider_id)
        if invitation is not None and invitation.outcome != "pending":
            # Closed under us: either someone won the race or the round ended.
            current = self._expire_if_overdue(self._require(attribution.id))
            if current.status not in BROADCASTING_STATUSES:
                return self._acceptance_rejected(current, provider_id)
        if invitation is None or invitation.outcome != "pending":
            return AcceptanceOutcome(
                success=False,
                outcome="not_invited",
                message="This mission was not offered to you",
            )

        updated = self._repository.compare_and_swap_status(
            attribution.id,
            AttributionGuard(
                statuses=BROADCASTING_STATUSES,
                accepted_provider_id=None,
                broadcast_count=attribution.broadcast_count,
                open_at=self._now(),
            ),
            AttributionChanges(status="attributed", accepted_provider_id=provider_id),
        )
        if updated is None:
            current = self._expire_if_overdue(self._require(attribution.id))
            if current.status in BROADCASTING_STATUSES:
                # A cancellation moved the attribution to a new round meanwhile.
                return AcceptanceOutcome(
                    success=False,
                    outcome="not_invited",
                    message="This mission was offered again; wait for the new invitation",
                )
            return self._acceptance_rejected(current, provider_id)

        round_no = updated.broadcast_count
        self._repository.set_assigned_provider(updated.service_request_id, provider_id)
        self._repository.close_response(updated.id, round_no, provider_id, "accepted")
        self._repository.close_pending_responses(updated.id, round_no, "superseded")
        self._blacklist.record_acceptance(provider_id)
        self._log_event("accepted", updated, provider_id=provider_id)

        self._notify(
            provider_id,
            OutboundNotice(
                kind="mission_confirmed",
                title="Mission confirmed",
                body=f"You have been assigned request {updated.service_request_id}.",
                attribution_id=updated.id,
                data={"service_request_id": updated.service_request_id},
            ),
        )
        for row in self._round_invitees(updated.id, round_no):
            if row.provider_id == provider_id:
                continue
            self._notify(
                row.provider_id,
                OutboundNotice(
                    kind="mission_taken",
                    title="Mission taken",
                    body="Another provider accepted this mission first.",
                    attribution_id=updated.id,
                ),
            )
        return AcceptanceOutcome(
            success=True,
            outcome="accepted",
            message="Mission accepted",
            attribution=updated,
        )

    def _acceptance_rejected(self, attribution: Attribution, provider_id: str) -> AcceptanceOutcome:
        if attribution.status == "attributed":
            if attribution.accepted_provider_id == provider_id:
                # Retried accept by the winner; re-apply the idempotent write-back.
                self._repository.set_assigned_provider(attribution.service_request_id, provider_id)
                return AcceptanceOutcome(
                    success=True,
                    outcome="accepted",
                    message="Mission already accepted by you",
                    attribution=attribution,
                )
            return AcceptanceOutcome(
                success=False,
                outcome="already_attributed",
                message="Mission already accepted by another provider",
            )
        if attribution.status == "expired":
            return AcceptanceOutcome(success=False, outcome="expired", message="This mission has expired")
        return AcceptanceOutcome(success=False, outcome="not_available", message="This mission is no longer available")

    def handle_refusal(self, attribution_id: str, provider_id: str, reason: Optional[str] = None) -> RefusalOutcome:
        attribution = self._expire_if_overdue(self._require(attribution_id))
        if attribution.status not in BROADCASTING_STATUSES:
            return RefusalOutcome(success=False, outcome="not_available", message="This mission is no longer open")

        round_no = attribution.broadcast_count
        if self._repository.get_response(attribution.id, round_no, provider_id) is None:
            return RefusalOutcome(success=False, outcome="not_invited", message="This mission was not offered to you")

        # Exclude first: once the round is won or over, the refusal is not counted.
        still_open = self._repository.compare_and_swap_status(
            attribution.id,
            AttributionGuard(statuses=BROADCASTING_STATUSES, accepted_provider_id=None, broadcast_count=round_no),
            AttributionChanges(add_excluded=frozenset({provider_id})),
        )
        cleaned_reason = (reason or "").strip() or None
        if still_open is None or not self._repository.close_response(
            attribution.id, round_no, provider_id, "refused", cleaned_reason
        ):
            response = self._repository.get_response(attribution.id, round_no, provider_id)
            if response is not None and response.outcome == "refused":
                return RefusalOutcome(
                    success=True,
                    outcome="duplicate",
                    message="Response already recorded",
                    provider_blacklisted=self._blacklist.is_blacklisted(provider_id),
                )
            return RefusalOutcome(success=False, outcome="not_available", message="This mission is no longer open")

        blacklisted = self._blacklist.record_refusal(provider_id, attribution.round_key)
        expired = self._expire_if_exhausted(attribution.id, round_no)
        self._log_event(
            "refused",
            attribution,
            provider_id=provider_id,
            reason=cleaned_reason,
            provider_blacklisted=blacklisted,
        )
        return RefusalOutcome(
            success=True,
            outcome="refused",
            message="Refusal recorded",
            provider_blacklisted=blacklisted,
            attribution_expired=expired,
        )

    def handle_cancellation(self, attribution_id: str, provider_id: str, reason: Optional[str] = None) -> CancellationOutcome:
        attribution = self._require(attribution_id)
        if attribution.status != "attributed":
            return CancellationOutcome(success=False, outcome="not_available", message="This mission can no longer be cancelled")
        if attribution.accepted_provider_id != provider_id:
            return CancellationOutcome(success=False, outcome="not_assigned", message="You are not assigned to this mission")

        previous_round_key = attribution.round_key
        updated = self._repository.compare_and_swap_status(
            attribution.id,
            AttributionGuard(
                statuses=frozenset({"attributed"}),
                accepted_provider_id=provider_id,
                broadcast_count=attribution.broadcast_count,
            ),
            AttributionChanges(
                status="re_broadcasting",
                accepted_provider_id=None,
                add_excluded=frozenset({provider_id}),
                increment_broadcast=True,
                round_expires_at=self._now() + self._round_ttl,
            ),
        )
        if updated is None:
            return CancellationOutcome(success=False, outcome="not_assigned", message="You are not assigned to this mission")

        self._repository.set_assigned_provider(updated.service_request_id, None)
        self._blacklist.record_cancellation(provider_id, previous_round_key)
        self._log_event(
            "cancelled_by_provider",
            updated,
            provider_id=provider_id,
            reason=(reason or "").strip() or None,
        )
        self._notify(
            provider_id,
            OutboundNotice(
                kind="mission_cancelled",
                title="Mission cancelled",
                body=f"Your cancellation of request {updated.service_request_id} is recorded.",
                attribution_id=updated.id,
            ),
        )
        rebroadcast = self._broadcast(updated)
        if rebroadcast.outcome == "no_eligible_providers":
            return CancellationOutcome(
                success=True,
                outcome="no_eligible_providers",
                message="Mission cancelled; no other provider is available",
                broadcast_count=rebroadcast.broadcast_count,
                attribution_expired=rebroadcast.status == "expired",
            )
        return CancellationOutcome(
            success=True,
            outcome="rebroadcasting",
            message="Mission cancelled and offered again",
            broadcast_count=updated.broadcast_count,
            eligible_count=rebroadcast.eligible_count,
        )

    def complete(self, attribution_id: str, provider_id: str) -> CompletionOutcome:
        attribution = self._require(attribution_id)
        if attribution.status != "attributed":
            return CompletionOutcome(success=False, outcome="not_available", message="Mission is not in progress")
        updated = self._repository.compare_and_swap_status(
            attribution.id,
            AttributionGuard(statuses=frozenset({"attributed"}), accepted_provider_id=provider_id),
            AttributionChanges(status="completed"),
        )
        if updated is None:
            return CompletionOutcome(success=False, outcome="not_assigned", message="You are not assigned to this mission")
        self._log_event("completed", updated, provider_id=provider_id)
        return CompletionOutcome(success=True, outcome="completed", message="Mission completed")

    def cancel(self, attribution_id: str, reason: str = "") -> Attribution:
        attribution = self._require(attribution_id)
        updated = self._repository.compare_and_swap_status(
            attribution.id,
            AttributionGuard(statuses=ACTIVE_STATUSES),
            AttributionChanges(status="cancelled", accepted_provider_id=None),
        )
        if updated is None:
            raise AttributionConflictError("Attribution is already terminal")
        self._repository.set_assigned_provider(updated.service_request_id, None)
        self._repository.close_pending_responses(updated.id, updated.broadcast_count, "superseded")
        if attribution.accepted_provider_id:
            self._notify(
                attribution.accepted_provider_id,
                OutboundNotice(
                    kind="mission_cancelled",
                    title="Mission cancelled",
                    body=f"Request {updated.service_request_id} was cancelled by operations.",
                    attribution_id=updated.id,
                ),
            )
        self._log_event("cancelled", updated, reason=reason.strip() or None)
        return updated

    # Queries

    def get_attribution(self, attribution_id: str) -> Attribution:
        return self._expire_if_overdue(self._require(attribution_id))

    def list_responses(self, attribution_id: str) -> List[EligibilityResponse]:
        self._require(attribution_id)
        return self._repository.list_responses(attribution_id)

    def list_provider_history(self, provider_id: str, limit: int = 20) -> List[EligibilityResponse]:
        return self._repository.list_responses_for_provider(provider_id, limit=limit)

    def stats(self) -> AttributionStats:
        rows = self._repository.list_attributions()
        total = len(rows)

        def count(*statuses: str) -> int:
            return sum(1 for row in rows if row.status in statuses)

        attributed = count("attributed")
        completed = count("completed")
        rebroadcast = sum(1 for row in rows if row.broadcast_count > 1)
        broadcasts = sum(row.broadcast_count for row in rows)
        return AttributionStats(
            total=total,
            active=count("broadcasting", "re_broadcasting"),
            attributed=attributed,
            completed=completed,
            expired=count("expired"),
            cancelled=count("cancelled"),
            rebroadcast_rate=round(rebroadcast / total, 4) if total else 0.0,
            acceptance_rate=round((attributed + completed) / total, 4) if total else 0.0,
            average_broadcast_count=round(broadcasts / total, 4) if total else 0.0,
        )
