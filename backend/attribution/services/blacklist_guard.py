import logging
from typing import List, Optional, Set
from uuid import uuid4

from attribution.errors import AttributionNotFoundError
from attribution.models import BlacklistEntry
from attribution.services.repository import AttributionRepository

logger = logging.getLogger(__name__)

CANCELLATION_REASON = "cancelled an accepted mission"


class BlacklistGuard:
    """Bans providers after consecutive refusals across distinct broadcast rounds.

    A round is identified by a round key (attribution id plus broadcast
    count), so refusing the same round twice counts once. Any accepted mission
    resets the counter. Cancelling an accepted mission bans at once. Bans are
    not time-limited; they stay until lifted.
    """

    def __init__(self, repository: AttributionRepository, threshold: int = 2):
        self._repository = repository
        self.threshold = max(1, threshold)

    def record_refusal(self, provider_id: str, round_key: Optional[str] = None) -> bool:
        if round_key is None:
            round_key = f"adhoc#{uuid4().hex}"
        entry = self._repository.increment_refusal_counter(provider_id, round_key)
        if entry is None:
            logger.info("Refusal already counted provider_id=%s round=%s", provider_id, round_key)
            return self.is_blacklisted(provider_id)
        if entry.is_active:
            return True
        if entry.consecutive_refusal_count < self.threshold:
            logger.info(
                "Refusal counted provider_id=%s consecutive=%d threshold=%d",
                provider_id,
                entry.consecutive_refusal_count,
                self.threshold,
            )
            return False
        reason = f"{entry.consecutive_refusal_count} consecutive refusals"
        activated = self._repository.activate_blacklist(provider_id, reason, min_count=self.threshold)
        if activated:
            logger.warning("Provider blacklisted provider_id=%s reason=%s", provider_id, reason)
        return activated

    def record_cancellation(self, provider_id: str, round_key: Optional[str] = None) -> bool:
        """Ban a provider who dropped a mission they had accepted.

        Weighs more than a refusal: the entry is activated at once with the
        counter raised to the threshold.
        """
        if round_key is None:
            round_key = f"adhoc#{uuid4().hex}"
        entry = self._repository.force_blacklist(
            provider_id,
            round_key,
            reason=CANCELLATION_REASON,
            min_count=self.threshold,
        )
        logger.warning(
            "Provider blacklisted provider_id=%s reason=%s consecutive=%d",
            provider_id,
            entry.reason,
            entry.consecutive_refusal_count,
        )
        return entry.is_active

    def record_acceptance(self, provider_id: str) -> None:
        self._repository.reset_refusal_counter(provider_id)

    def is_blacklisted(self, provider_id: str) -> bool:
        entry = self._repository.get_blacklist_entry(provider_id)
        return bool(entry and entry.is_active)

    def reason(self, provider_id: str) -> str:
        entry = self._repository.get_blacklist_entry(provider_id)
        if not entry or not entry.is_active:
            return ""
        return entry.reason

    def blacklisted_ids(self) -> Set[str]:
        return self._repository.active_blacklisted_ids()

    def get_entry(self, provider_id: str) -> Optional[BlacklistEntry]:
        return self._repository.get_blacklist_entry(provider_id)

    def list_entries(self, active_only: bool = True) -> List[BlacklistEntry]:
        return self._repository.list_blacklist_entries(active_only=active_only)

    def lift(self, provider_id: str) -> BlacklistEntry:
        if not self._repository.lift_blacklist(provider_id):
            raise AttributionNotFoundError("No active blacklist entry for this provider")
        logger.info("Blacklist lifted provider_id=%s", provider_id)
        entry = self._repository.get_blacklist_entry(provider_id)
        assert entry is not None
        return entry
