from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional
from uuid import uuid4

from attribution.models import NoticeKind, ProviderNotice
from attribution.services.push_sender import PushSender


class NotificationStore:
    """Per-recipient inbox of attribution notices, mirrored to push devices."""

    def __init__(self, push_sender: Optional[PushSender] = None, max_per_recipient: int = 200):
        self._lock = Lock()
        self._notices: List[ProviderNotice] = []
        self._device_tokens: Dict[str, set[str]] = {}
        self._push_sender = push_sender or PushSender()
        self._max_per_recipient = max_per_recipient

    def register_device_token(self, recipient_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(recipient_id, set()).add(device_token.strip())

    def create(
        self,
        recipient_id: str,
        kind: NoticeKind,
        title: str,
        body: str,
        attribution_id: Optional[str] = None,
        data: Optional[Dict[str, str]] = None,
    ) -> ProviderNotice:
        notice = ProviderNotice(
            id=f"ntc_{uuid4().hex[:10]}",
            recipient_id=recipient_id,
            kind=kind,
            attribution_id=attribution_id,
            title=title,
            body=body,
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            data=dict(data or {}),
        )
        with self._lock:
            self._notices.insert(0, notice)
            self._trim_recipient(recipient_id)
            tokens = list(self._device_tokens.get(recipient_id, set()))
        invalid_tokens = self._push_sender.send(
            tokens=tokens,
            title=title,
            body=body,
            data={
                "notice_id": notice.id,
                "kind": kind,
                "attribution_id": attribution_id or "",
                **notice.data,
            },
        )
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(recipient_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return notice

    def _trim_recipient(self, recipient_id: str) -> None:
        # Caller holds the lock; newest notices sit at the front.
        kept = 0
        trimmed: List[ProviderNotice] = []
        for row in self._notices:
            if row.recipient_id == recipient_id:
                kept += 1
                if kept > self._max_per_recipient:
                    continue
            trimmed.append(row)
        self._notices = trimmed

    def list_for_recipient(
        self,
        recipient_id: str,
        unread_only: bool = False,
        kind: Optional[str] = None,
    ) -> List[ProviderNotice]:
        with self._lock:
            rows = [n for n in self._notices if n.recipient_id == recipient_id]
        if unread_only:
            rows = [n for n in rows if not n.read]
        if kind:
            rows = [n for n in rows if n.kind == kind]
        return rows[: self._max_per_recipient]

    def mark_read(self, recipient_id: str, notice_id: str) -> Optional[ProviderNotice]:
        with self._lock:
            for idx, row in enumerate(self._notices):
                if row.id == notice_id and row.recipient_id == recipient_id:
                    updated = row.model_copy(update={"read": True})
                    self._notices[idx] = updated
                    return updated
        return None
