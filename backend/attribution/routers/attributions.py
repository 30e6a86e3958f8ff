from typing import Optional

from fastapi import APIRouter, Depends, Header

from attribution.auth import assert_actor_authorized
from attribution.dependencies import AttributionContainer, get_container, get_coordinator
from attribution.errors import AttributionError, AttributionStoreUnavailableError
from attribution.models import (
    AcceptanceOutcome,
    AdminCancelRequest,
    Attribution,
    AttributionStartRequest,
    AttributionStats,
    AttributionView,
    CancellationOutcome,
    CompletionOutcome,
    EligibilityResponse,
    ExpirySweepResult,
    PaymentSucceededEvent,
    ProviderActionRequest,
    RefusalOutcome,
    StartOutcome,
)
from attribution.routers.http_errors import raise_attribution_http_error
from attribution.services.coordinator import AttributionCoordinator

router = APIRouter(tags=["attributions"])


def _assert_operations(container: AttributionContainer, authorization: Optional[str]) -> None:
    assert_actor_authorized(actor_user_id=container.settings.operations_recipient_id, authorization=authorization)


@router.post("/payments/succeeded", response_model=StartOutcome)
def payment_succeeded(
    event: PaymentSucceededEvent,
    coordinator: AttributionCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.handle_payment_succeeded(event)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.post("/attributions", response_model=StartOutcome)
def start_attribution(
    request: AttributionStartRequest,
    coordinator: AttributionCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.start(
            service_request_id=request.service_request_id,
            service_type=request.service_type,
            lat=request.latitude,
            lng=request.longitude,
            max_distance_km=request.max_distance_km,
        )
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.get("/attributions/stats", response_model=AttributionStats)
def attribution_stats(coordinator: AttributionCoordinator = Depends(get_coordinator)):
    try:
        return coordinator.stats()
    except AttributionStoreUnavailableError as exc:
        raise_attribution_http_error(exc)


@router.post("/attributions/expire-due", response_model=ExpirySweepResult)
def expire_due_attributions(
    container: AttributionContainer = Depends(get_container),
    authorization: Optional[str] = Header(default=None),
):
    _assert_operations(container, authorization)
    try:
        return ExpirySweepResult(expired_attribution_ids=container.coordinator.expire_due())
    except AttributionStoreUnavailableError as exc:
        raise_attribution_http_error(exc)


@router.get("/attributions/{attribution_id}", response_model=AttributionView)
def get_attribution(
    attribution_id: str,
    coordinator: AttributionCoordinator = Depends(get_coordinator),
):
    try:
        attribution = coordinator.get_attribution(attribution_id)
        return AttributionView(attribution=attribution, responses=coordinator.list_responses(attribution_id))
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.get("/attributions/{attribution_id}/responses", response_model=list[EligibilityResponse])
def list_attribution_responses(
    attribution_id: str,
    coordinator: AttributionCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.list_responses(attribution_id)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.post("/attributions/{attribution_id}/accept", response_model=AcceptanceOutcome)
def accept_attribution(
    attribution_id: str,
    request: ProviderActionRequest,
    coordinator: AttributionCoordinator = Depends(get_coordinator),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.provider_id, authorization=authorization)
    try:
        return coordinator.handle_acceptance(attribution_id, request.provider_id)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.post("/attributions/{attribution_id}/refuse", response_model=RefusalOutcome)
def refuse_attribution(
    attribution_id: str,
    request: ProviderActionRequest,
    coordinator: AttributionCoordinator = Depends(get_coordinator),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.provider_id, authorization=authorization)
    try:
        return coordinator.handle_refusal(attribution_id, request.provider_id, reason=request.reason)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.post("/attributions/{attribution_id}/cancel", response_model=CancellationOutcome)
def cancel_accepted_attribution(
    attribution_id: str,
    request: ProviderActionRequest,
    coordinator: AttributionCoordinator = Depends(get_coordinator),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.provider_id, authorization=authorization)
    try:
        return coordinator.handle_cancellation(attribution_id, request.provider_id, reason=request.reason)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.post("/attributions/{attribution_id}/complete", response_model=CompletionOutcome)
def complete_attribution(
    attribution_id: str,
    request: ProviderActionRequest,
    coordinator: AttributionCoordinator = Depends(get_coordinator),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.provider_id, authorization=authorization)
    try:
        return coordinator.complete(attribution_id, request.provider_id)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.post("/attributions/{attribution_id}/admin-cancel", response_model=Attribution)
def admin_cancel_attribution(
    attribution_id: str,
    request: AdminCancelRequest,
    container: AttributionContainer = Depends(get_container),
    authorization: Optional[str] = Header(default=None),
):
    _assert_operations(container, authorization)
    try:
        return container.coordinator.cancel(attribution_id, reason=request.reason)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)
