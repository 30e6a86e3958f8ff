"""
Wiring of the attribution services and their FastAPI dependencies.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from attribution.config import Settings
from attribution.services.blacklist_guard import BlacklistGuard
from attribution.services.coordinator import AttributionCoordinator
from attribution.services.geo_matcher import GeoMatcher
from attribution.services.notification_dispatcher import NotificationDispatcher, QueueNotificationDispatcher
from attribution.services.notification_store import NotificationStore
from attribution.services.push_sender import PushSender
from attribution.services.repository import AttributionRepository
from attribution.services.sqlite_repository import SqliteAttributionRepository

logger = logging.getLogger(__name__)


@dataclass
class AttributionContainer:
    settings: Settings
    repository: AttributionRepository
    blacklist: BlacklistGuard
    geo_matcher: GeoMatcher
    notification_store: NotificationStore
    dispatcher: NotificationDispatcher
    coordinator: AttributionCoordinator

    def close(self) -> None:
        self.dispatcher.close()


def build_container(
    settings: Optional[Settings] = None,
    repository: Optional[AttributionRepository] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    push_sender: Optional[PushSender] = None,
) -> AttributionContainer:
    settings = settings or Settings.from_env()
    repository = repository or SqliteAttributionRepository(db_path=settings.db_path)
    blacklist = BlacklistGuard(repository, threshold=settings.blacklist_threshold)
    geo_matcher = GeoMatcher(repository, blacklist, default_max_distance_km=settings.default_max_distance_km)
    notification_store = NotificationStore(push_sender=push_sender)
    dispatcher = dispatcher or QueueNotificationDispatcher(notification_store, maxsize=settings.notification_queue_size)
    coordinator = AttributionCoordinator(
        repository=repository,
        geo_matcher=geo_matcher,
        blacklist=blacklist,
        dispatcher=dispatcher,
        round_ttl_minutes=settings.round_ttl_minutes,
        operations_recipient_id=settings.operations_recipient_id,
    )
    logger.info(
        "Attribution services ready repository=%s radius_km=%s round_ttl_minutes=%d blacklist_threshold=%d",
        type(repository).__name__,
        settings.default_max_distance_km,
        settings.round_ttl_minutes,
        settings.blacklist_threshold,
    )
    return AttributionContainer(
        settings=settings,
        repository=repository,
        blacklist=blacklist,
        geo_matcher=geo_matcher,
        notification_store=notification_store,
        dispatcher=dispatcher,
        coordinator=coordinator,
    )


def get_container(request: Request) -> AttributionContainer:
    return request.app.state.attribution


def get_coordinator(request: Request) -> AttributionCoordinator:
    return request.app.state.attribution.coordinator


def get_geo_matcher(request: Request) -> GeoMatcher:
    return request.app.state.attribution.geo_matcher


def get_blacklist(request: Request) -> BlacklistGuard:
    return request.app.state.attribution.blacklist


def get_notification_store(request: Request) -> NotificationStore:
    return request.app.state.attribution.notification_store
