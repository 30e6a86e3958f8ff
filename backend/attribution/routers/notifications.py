from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from attribution.auth import assert_actor_authorized
from attribution.dependencies import get_notification_store
from attribution.models import DeviceTokenRegisterRequest, ProviderNotice
from attribution.services.notification_store import NotificationStore

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[ProviderNotice])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    kind: Optional[str] = Query(default=None),
    store: NotificationStore = Depends(get_notification_store),
):
    return store.list_for_recipient(recipient_id=user_id, unread_only=unread_only, kind=kind)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    store: NotificationStore = Depends(get_notification_store),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    store.register_device_token(recipient_id=payload.user_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.post("/{notice_id}/read", response_model=ProviderNotice)
def mark_notification_read(
    notice_id: str,
    user_id: str = Query(...),
    store: NotificationStore = Depends(get_notification_store),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    updated = store.mark_read(recipient_id=user_id, notice_id=notice_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
