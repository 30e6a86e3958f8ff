from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from attribution.auth import assert_actor_authorized
from attribution.dependencies import AttributionContainer, get_blacklist, get_container
from attribution.errors import AttributionError, AttributionStoreUnavailableError
from attribution.models import BlacklistEntry
from attribution.routers.http_errors import raise_attribution_http_error
from attribution.services.blacklist_guard import BlacklistGuard

router = APIRouter(prefix="/blacklist", tags=["blacklist"])


@router.get("", response_model=list[BlacklistEntry])
def list_blacklist(
    active_only: bool = Query(default=True),
    blacklist: BlacklistGuard = Depends(get_blacklist),
):
    try:
        return blacklist.list_entries(active_only=active_only)
    except AttributionStoreUnavailableError as exc:
        raise_attribution_http_error(exc)


@router.get("/{provider_id}", response_model=BlacklistEntry)
def get_blacklist_entry(
    provider_id: str,
    blacklist: BlacklistGuard = Depends(get_blacklist),
):
    try:
        entry = blacklist.get_entry(provider_id)
    except AttributionStoreUnavailableError as exc:
        raise_attribution_http_error(exc)
    if entry is None:
        raise HTTPException(status_code=404, detail="Provider has no refusal history")
    return entry


@router.post("/{provider_id}/lift", response_model=BlacklistEntry)
def lift_blacklist(
    provider_id: str,
    container: AttributionContainer = Depends(get_container),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=container.settings.operations_recipient_id, authorization=authorization)
    try:
        return container.blacklist.lift(provider_id)
    except (AttributionError, AttributionStoreUnavailableError) as exc:
        raise_attribution_http_error(exc)
