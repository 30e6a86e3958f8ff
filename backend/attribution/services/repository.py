"""Storage contract for the attribution engine.

Every mutation of an attribution goes through ``compare_and_swap_status``: the
change is applied only when the stored row still matches the guard, so two
racing callers can never both win. Implementations must make each method
atomic with respect to the others.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional, Set

from attribution.models import (
    Attribution,
    AttributionStatus,
    BlacklistEntry,
    EligibilityResponse,
    Provider,
    ResponseOutcome,
    ServiceRequest,
)


class _Sentinel:
    def __init__(self, label: str) -> None:
        self._label = label

    def __repr__(self) -> str:
        return self._label


UNSET = _Sentinel("UNSET")
ANY = _Sentinel("ANY")


@dataclass(frozen=True)
class AttributionGuard:
    """Conditions the stored attribution must satisfy for a write to apply.

    ``accepted_provider_id`` left as ``ANY`` is not checked; ``None`` requires
    the column to be null. ``open_at`` requires ``round_expires_at > open_at``
    and ``closed_at`` requires ``round_expires_at <= closed_at``.
    """

    statuses: FrozenSet[str]
    accepted_provider_id: object = ANY
    broadcast_count: Optional[int] = None
    open_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


@dataclass(frozen=True)
class AttributionChanges:
    status: Optional[AttributionStatus] = None
    accepted_provider_id: object = UNSET
    add_excluded: FrozenSet[str] = frozenset()
    increment_broadcast: bool = False
    round_expires_at: object = UNSET


def guard_matches(attribution: Attribution, guard: AttributionGuard) -> bool:
    if attribution.status not in guard.statuses:
        return False
    if guard.accepted_provider_id is not ANY and attribution.accepted_provider_id != guard.accepted_provider_id:
        return False
    if guard.broadcast_count is not None and attribution.broadcast_count != guard.broadcast_count:
        return False
    expires_at = attribution.round_expires_at
    if guard.open_at is not None and (expires_at is None or expires_at <= guard.open_at):
        return False
    if guard.closed_at is not None and (expires_at is None or expires_at > guard.closed_at):
        return False
    return True


def apply_changes(attribution: Attribution, changes: AttributionChanges, now: datetime) -> Attribution:
    update: dict = {"updated_at": now}
    if changes.status is not None:
        update["status"] = changes.status
    if changes.accepted_provider_id is not UNSET:
        update["accepted_provider_id"] = changes.accepted_provider_id
    if changes.add_excluded:
        update["excluded_provider_ids"] = attribution.excluded_provider_ids | changes.add_excluded
    if changes.increment_broadcast:
        update["broadcast_count"] = attribution.broadcast_count + 1
    if changes.round_expires_at is not UNSET:
        update["round_expires_at"] = changes.round_expires_at
    return attribution.model_copy(update=update)


@dataclass
class ResponseInvite:
    provider_id: str
    distance_km: Optional[float] = None


class AttributionRepository(ABC):
    # Service requests

    @abstractmethod
    def save_service_request(self, request: ServiceRequest) -> ServiceRequest: ...

    @abstractmethod
    def get_service_request(self, service_request_id: str) -> Optional[ServiceRequest]: ...

    @abstractmethod
    def set_assigned_provider(self, service_request_id: str, provider_id: Optional[str]) -> None: ...

    # Providers

    @abstractmethod
    def save_provider(self, provider: Provider) -> Provider: ...

    @abstractmethod
    def get_provider(self, provider_id: str) -> Optional[Provider]: ...

    @abstractmethod
    def list_providers(self) -> List[Provider]: ...

    # Attributions

    @abstractmethod
    def create_attribution(self, attribution: Attribution) -> Attribution:
        """Insert ``attribution``.

        Raises ``AttributionConflictError`` when the service request already
        has an attribution in an active status.
        """

    @abstractmethod
    def get_attribution(self, attribution_id: str) -> Optional[Attribution]: ...

    @abstractmethod
    def list_attributions(self, statuses: Optional[Iterable[str]] = None) -> List[Attribution]: ...

    @abstractmethod
    def compare_and_swap_status(
        self,
        attribution_id: str,
        guard: AttributionGuard,
        changes: AttributionChanges,
    ) -> Optional[Attribution]:
        """Apply ``changes`` only if the stored row satisfies ``guard``.

        Returns the updated attribution, or None when the guard did not match
        (including when the row does not exist).
        """

    # Eligibility responses

    @abstractmethod
    def open_responses(self, attribution_id: str, round: int, invites: List[ResponseInvite]) -> None: ...

    @abstractmethod
    def close_response(
        self,
        attribution_id: str,
        round: int,
        provider_id: str,
        outcome: ResponseOutcome,
        reason: Optional[str] = None,
    ) -> bool:
        """Close a pending response. False when it is missing or already closed."""

    @abstractmethod
    def close_pending_responses(self, attribution_id: str, round: int, outcome: ResponseOutcome) -> List[str]: ...

    @abstractmethod
    def get_response(self, attribution_id: str, round: int, provider_id: str) -> Optional[EligibilityResponse]: ...

    @abstractmethod
    def list_responses(self, attribution_id: str) -> List[EligibilityResponse]: ...

    @abstractmethod
    def list_responses_for_provider(self, provider_id: str, limit: int = 20) -> List[EligibilityResponse]: ...

    # Blacklist

    @abstractmethod
    def increment_refusal_counter(self, provider_id: str, round_key: str) -> Optional[BlacklistEntry]:
        """Atomically count one refusal for ``round_key``.

        Returns None when this round key was already the last one counted.
        """

    @abstractmethod
    def activate_blacklist(self, provider_id: str, reason: str, min_count: int) -> bool: ...

    @abstractmethod
    def force_blacklist(self, provider_id: str, round_key: str, reason: str, min_count: int) -> BlacklistEntry:
        """Ban immediately, raising the consecutive count to at least ``min_count``.

        The round key is counted in the totals once, like a refusal.
        """

    @abstractmethod
    def reset_refusal_counter(self, provider_id: str) -> None: ...

    @abstractmethod
    def lift_blacklist(self, provider_id: str) -> bool: ...

    @abstractmethod
    def get_blacklist_entry(self, provider_id: str) -> Optional[BlacklistEntry]: ...

    @abstractmethod
    def list_blacklist_entries(self, active_only: bool = False) -> List[BlacklistEntry]: ...

    def active_blacklisted_ids(self) -> Set[str]:
        return {entry.provider_id for entry in self.list_blacklist_entries(active_only=True)}

