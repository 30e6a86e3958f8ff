from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from attribution.auth import require_authenticated_user
from attribution.dependencies import AttributionContainer, get_container, get_coordinator, get_geo_matcher
from attribution.errors import AttributionError, AttributionStoreUnavailableError
from attribution.models import EligibilityResponse, EligibleProvider, Provider, ProviderUpsertRequest
from attribution.routers.http_errors import raise_attribution_http_error
from attribution.services.coordinator import AttributionCoordinator
from attribution.services.geo_matcher import GeoMatcher

router = APIRouter(prefix="/providers", tags=["providers"])


def _parse_excluded(raw: Optional[str]) -> frozenset:
    if not raw:
        return frozenset()
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


@router.get("/eligible", response_model=list[EligibleProvider])
def list_eligible_providers(
    service_type: str = Query(...),
    lat: float = Query(...),
    lng: float = Query(...),
    max_distance_km: Optional[float] = Query(default=None),
    exclude: Optional[str] = Query(default=None, description="Comma-separated provider ids"),
    geo_matcher: GeoMatcher = Depends(get_geo_matcher),
):
    try:
        return geo_matcher.find_eligible(
            service_type,
            lat,
            lng,
            max_distance_km=max_distance_km,
            excluded_ids=_parse_excluded(exclude),
        )
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)


@router.get("/eligible/count", response_model=dict)
def count_eligible_providers(
    service_type: str = Query(...),
    lat: float = Query(...),
    lng: float = Query(...),
    max_distance_km: Optional[float] = Query(default=None),
    geo_matcher: GeoMatcher = Depends(get_geo_matcher),
):
    try:
        count = geo_matcher.count_eligible(service_type, lat, lng, max_distance_km=max_distance_km)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)
    return {"service_type": service_type, "count": count}


@router.put("/{provider_id}", response_model=Provider)
def upsert_provider(
    provider_id: str,
    request: ProviderUpsertRequest,
    user_id: str = Depends(require_authenticated_user),
    container: AttributionContainer = Depends(get_container),
):
    # The registry carries the verified flag, so only operations may write it.
    if user_id != container.settings.operations_recipient_id:
        raise HTTPException(status_code=403, detail="Only operations can register providers")
    try:
        return container.repository.save_provider(Provider(id=provider_id, **request.model_dump()))
    except AttributionStoreUnavailableError as exc:
        raise_attribution_http_error(exc)


@router.get("/{provider_id}/attributions", response_model=list[EligibilityResponse])
def provider_attribution_history(
    provider_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    coordinator: AttributionCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.list_provider_history(provider_id, limit=limit)
    except AttributionStoreUnavailableError as exc:
        raise_attribution_http_error(exc)
