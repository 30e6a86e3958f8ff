from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from attribution.errors import AttributionConflictError
from attribution.models import (
    ACTIVE_STATUSES,
    Attribution,
    BlacklistEntry,
    EligibilityResponse,
    Provider,
    ResponseOutcome,
    ServiceRequest,
)
from attribution.services.repository import (
    AttributionChanges,
    AttributionGuard,
    AttributionRepository,
    ResponseInvite,
    apply_changes,
    guard_matches,
)

ResponseKey = Tuple[str, int, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryAttributionRepository(AttributionRepository):
    """Lock-guarded dictionaries. Same conditional-write semantics as the SQLite store."""

    def __init__(self):
        self._lock = Lock()
        self._service_requests: Dict[str, ServiceRequest] = {}
        self._providers: Dict[str, Provider] = {}
        self._attributions: Dict[str, Attribution] = {}
        self._responses: Dict[ResponseKey, EligibilityResponse] = {}
        self._blacklist: Dict[str, BlacklistEntry] = {}

    def save_service_request(self, request: ServiceRequest) -> ServiceRequest:
        with self._lock:
            existing = self._service_requests.get(request.id)
            if existing is not None:
                request = request.model_copy(update={"assigned_provider_id": existing.assigned_provider_id})
            self._service_requests[request.id] = request
        return request

    def get_service_request(self, service_request_id: str) -> Optional[ServiceRequest]:
        with self._lock:
            return self._service_requests.get(service_request_id)

    def set_assigned_provider(self, service_request_id: str, provider_id: Optional[str]) -> None:
        with self._lock:
            current = self._service_requests.get(service_request_id)
            if current is None:
                return
            self._service_requests[service_request_id] = current.model_copy(
                update={"assigned_provider_id": provider_id}
            )

    def save_provider(self, provider: Provider) -> Provider:
        with self._lock:
            self._providers[provider.id] = provider
        return provider

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        with self._lock:
            return self._providers.get(provider_id)

    def list_providers(self) -> List[Provider]:
        with self._lock:
            return list(self._providers.values())

    def create_attribution(self, attribution: Attribution) -> Attribution:
        with self._lock:
            for existing in self._attributions.values():
                if existing.service_request_id == attribution.service_request_id and existing.status in ACTIVE_STATUSES:
                    raise AttributionConflictError(
                        f"Service request {attribution.service_request_id} already has an active attribution"
                    )
            self._attributions[attribution.id] = attribution
        return attribution

    def get_attribution(self, attribution_id: str) -> Optional[Attribution]:
        with self._lock:
            return self._attributions.get(attribution_id)

    def list_attributions(self, statuses: Optional[Iterable[str]] = None) -> List[Attribution]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [a for a in self._attributions.values() if wanted is None or a.status in wanted]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return rows

    def compare_and_swap_status(
        self,
        attribution_id: str,
        guard: AttributionGuard,
        changes: AttributionChanges,
    ) -> Optional[Attribution]:
        with self._lock:
            current = self._attributions.get(attribution_id)
            if current is None or not guard_matches(current, guard):
                return None
            updated = apply_changes(current, changes, _utcnow())
            self._attributions[attribution_id] = updated
            return updated

    def open_responses(self, attribution_id: str, round: int, invites: List[ResponseInvite]) -> None:
        now = _utcnow()
        with self._lock:
            for invite in invites:
                key = (attribution_id, round, invite.provider_id)
                if key in self._responses:
                    continue
                self._responses[key] = EligibilityResponse(
                    attribution_id=attribution_id,
                    provider_id=invite.provider_id,
                    round=round,
                    distance_km=invite.distance_km,
                    created_at=now,
                )

    def close_response(
        self,
        attribution_id: str,
        round: int,
        provider_id: str,
        outcome: ResponseOutcome,
        reason: Optional[str] = None,
    ) -> bool:
        key = (attribution_id, round, provider_id)
        with self._lock:
            current = self._responses.get(key)
            if current is None or current.outcome != "pending":
                return False
            self._responses[key] = current.model_copy(
                update={"outcome": outcome, "reason": reason, "responded_at": _utcnow()}
            )
            return True

    def close_pending_responses(self, attribution_id: str, round: int, outcome: ResponseOutcome) -> List[str]:
        closed: List[str] = []
        now = _utcnow()
        with self._lock:
            for key, row in self._responses.items():
                if key[0] != attribution_id or key[1] != round or row.outcome != "pending":
                    continue
                self._responses[key] = row.model_copy(update={"outcome": outcome, "responded_at": now})
                closed.append(row.provider_id)
        return sorted(closed)

    def get_response(self, attribution_id: str, round: int, provider_id: str) -> Optional[EligibilityResponse]:
        with self._lock:
            return self._responses.get((attribution_id, round, provider_id))

    def list_responses(self, attribution_id: str) -> List[EligibilityResponse]:
        with self._lock:
            rows = [row for key, row in self._responses.items() if key[0] == attribution_id]
        rows.sort(key=lambda r: (r.round, r.provider_id))
        return rows

    def list_responses_for_provider(self, provider_id: str, limit: int = 20) -> List[EligibilityResponse]:
        with self._lock:
            rows = [row for row in self._responses.values() if row.provider_id == provider_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]

    def increment_refusal_counter(self, provider_id: str, round_key: str) -> Optional[BlacklistEntry]:
        now = _utcnow()
        with self._lock:
            current = self._blacklist.get(provider_id) or BlacklistEntry(provider_id=provider_id)
            if current.last_round_key == round_key:
                return None
            updated = current.model_copy(
                update={
                    "consecutive_refusal_count": current.consecutive_refusal_count + 1,
                    "total_refusal_count": current.total_refusal_count + 1,
                    "last_round_key": round_key,
                    "updated_at": now,
                }
            )
            self._blacklist[provider_id] = updated
            return updated

    def force_blacklist(self, provider_id: str, round_key: str, reason: str, min_count: int) -> BlacklistEntry:
        now = _utcnow()
        with self._lock:
            current = self._blacklist.get(provider_id) or BlacklistEntry(provider_id=provider_id)
            counted = 0 if current.last_round_key == round_key else 1
            updated = current.model_copy(
                update={
                    "consecutive_refusal_count": max(min_count, current.consecutive_refusal_count + counted),
                    "total_refusal_count": current.total_refusal_count + counted,
                    "last_round_key": round_key,
                    "is_active": True,
                    "reason": reason,
                    "blacklisted_at": current.blacklisted_at or now,
                    "updated_at": now,
                }
            )
            self._blacklist[provider_id] = updated
            return updated

    def activate_blacklist(self, provider_id: str, reason: str, min_count: int) -> bool:
        now = _utcnow()
        with self._lock:
            current = self._blacklist.get(provider_id)
            if current is None or current.consecutive_refusal_count < min_count:
                return False
            self._blacklist[provider_id] = current.model_copy(
                update={
                    "is_active": True,
                    "reason": reason,
                    "blacklisted_at": current.blacklisted_at or now,
                    "updated_at": now,
                }
            )
            return True

    def _cleared(self, entry: BlacklistEntry) -> BlacklistEntry:
        return entry.model_copy(
            update={
                "consecutive_refusal_count": 0,
                "is_active": False,
                "reason": "",
                "blacklisted_at": None,
                "updated_at": _utcnow(),
            }
        )

    def reset_refusal_counter(self, provider_id: str) -> None:
        with self._lock:
            current = self._blacklist.get(provider_id)
            if current is not None:
                self._blacklist[provider_id] = self._cleared(current)

    def lift_blacklist(self, provider_id: str) -> bool:
        with self._lock:
            current = self._blacklist.get(provider_id)
            if current is None or not current.is_active:
                return False
            self._blacklist[provider_id] = self._cleared(current)
            return True

    def get_blacklist_entry(self, provider_id: str) -> Optional[BlacklistEntry]:
        with self._lock:
            return self._blacklist.get(provider_id)

    def list_blacklist_entries(self, active_only: bool = False) -> List[BlacklistEntry]:
        with self._lock:
            rows = [row for row in self._blacklist.values() if row.is_active or not active_only]
        rows.sort(key=lambda r: r.provider_id)
        return rows
