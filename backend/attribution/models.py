from datetime import datetime
from typing import Dict, FrozenSet, Literal, Optional

from pydantic import BaseModel, Field

ServiceType = Literal["moving", "cleaning", "packing", "delivery"]
SERVICE_TYPES = ("moving", "cleaning", "packing", "delivery")

AttributionStatus = Literal[
    "broadcasting",
    "re_broadcasting",
    "attributed",
    "completed",
    "expired",
    "cancelled",
]

BROADCASTING_STATUSES = frozenset({"broadcasting", "re_broadcasting"})
ACTIVE_STATUSES = frozenset({"broadcasting", "re_broadcasting", "attributed"})
TERMINAL_STATUSES = frozenset({"completed", "expired", "cancelled"})

ResponseOutcome = Literal["pending", "accepted", "refused", "timed_out", "superseded"]

NoticeKind = Literal[
    "invitation",
    "mission_taken",
    "mission_confirmed",
    "mission_cancelled",
    "attribution_expired",
    "no_eligible_providers",
]


class ServiceRequest(BaseModel):
    id: str
    service_type: ServiceType
    latitude: float
    longitude: float
    amount: float = 0.0
    scheduled_date: Optional[str] = None
    assigned_provider_id: Optional[str] = None


class Provider(BaseModel):
    id: str
    name: str = ""
    latitude: float
    longitude: float
    service_types: list[ServiceType] = Field(default_factory=list)
    verified: bool = False
    available: bool = True
    max_travel_km: Optional[float] = None


class EligibleProvider(BaseModel):
    provider_id: str
    name: str = ""
    distance_km: float
    # Unrounded distance; ordering and radius checks use this one.
    exact_distance_km: float = Field(default=0.0, exclude=True)


class Attribution(BaseModel):
    id: str
    service_request_id: str
    service_type: ServiceType
    status: AttributionStatus
    service_latitude: float
    service_longitude: float
    max_distance_km: float
    broadcast_count: int = 0
    excluded_provider_ids: FrozenSet[str] = frozenset()
    accepted_provider_id: Optional[str] = None
    round_expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def round_key(self) -> str:
        return f"{self.id}#{self.broadcast_count}"


class EligibilityResponse(BaseModel):
    attribution_id: str
    provider_id: str
    round: int
    outcome: ResponseOutcome = "pending"
    reason: Optional[str] = None
    distance_km: Optional[float] = None
    created_at: datetime
    responded_at: Optional[datetime] = None


class BlacklistEntry(BaseModel):
    provider_id: str
    consecutive_refusal_count: int = 0
    total_refusal_count: int = 0
    is_active: bool = False
    reason: str = ""
    last_round_key: Optional[str] = None
    blacklisted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProviderNotice(BaseModel):
    id: str
    recipient_id: str
    kind: NoticeKind
    attribution_id: Optional[str] = None
    title: str
    body: str
    read: bool = False
    created_at: str
    data: Dict[str, str] = Field(default_factory=dict)


# Typed outcomes. Business conditions are reported here, never raised.

class StartOutcome(BaseModel):
    attribution_id: str
    status: AttributionStatus
    eligible_count: int
    broadcast_count: int
    outcome: Literal["broadcasting", "no_eligible_providers"]


class AcceptanceOutcome(BaseModel):
    success: bool
    outcome: Literal["accepted", "already_attributed", "not_available", "not_invited", "expired"]
    message: str
    attribution: Optional[Attribution] = None


class RefusalOutcome(BaseModel):
    success: bool
    outcome: Literal["refused", "duplicate", "not_available", "not_invited"]
    message: str = ""
    provider_blacklisted: bool = False
    attribution_expired: bool = False


class CancellationOutcome(BaseModel):
    success: bool
    outcome: Literal["rebroadcasting", "no_eligible_providers", "not_assigned", "not_available"]
    message: str = ""
    broadcast_count: Optional[int] = None
    eligible_count: int = 0
    attribution_expired: bool = False


class CompletionOutcome(BaseModel):
    success: bool
    outcome: Literal["completed", "not_assigned", "not_available"]
    message: str = ""


class AttributionStats(BaseModel):
    total: int
    active: int
    attributed: int
    completed: int
    expired: int
    cancelled: int
    rebroadcast_rate: float
    acceptance_rate: float
    average_broadcast_count: float


# Request bodies

class PaymentSucceededEvent(BaseModel):
    service_request_id: str
    service_type: ServiceType
    latitude: float
    longitude: float
    amount: float = 0.0
    scheduled_date: Optional[str] = None
    max_distance_km: Optional[float] = None


class AttributionStartRequest(BaseModel):
    service_request_id: str
    service_type: ServiceType
    latitude: float
    longitude: float
    max_distance_km: Optional[float] = None


class ProviderActionRequest(BaseModel):
    provider_id: str
    reason: Optional[str] = None


class AdminCancelRequest(BaseModel):
    reason: str = ""


class ProviderUpsertRequest(BaseModel):
    name: str = ""
    latitude: float
    longitude: float
    service_types: list[ServiceType] = Field(default_factory=list)
    verified: bool = False
    available: bool = True
    max_travel_km: Optional[float] = None


class AttributionView(BaseModel):
    attribution: Attribution
    responses: list[EligibilityResponse]


class ExpirySweepResult(BaseModel):
    expired_attribution_ids: list[str]


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "attribution-demo"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"

