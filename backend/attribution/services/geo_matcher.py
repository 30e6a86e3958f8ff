import logging
import math
from typing import AbstractSet, Iterable, List, Optional

from attribution.errors import AttributionNotFoundError, AttributionValidationError
from attribution.models import SERVICE_TYPES, EligibleProvider, Provider
from attribution.services.blacklist_guard import BlacklistGuard
from attribution.services.repository import AttributionRepository

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def validate_location(service_type: str, lat: float, lng: float, max_distance_km: float) -> None:
    if service_type not in SERVICE_TYPES:
        raise AttributionValidationError(f"Unknown service type. Allowed: {', '.join(SERVICE_TYPES)}")
    if not isinstance(lat, (int, float)) or math.isnan(lat) or not -90.0 <= lat <= 90.0:
        raise AttributionValidationError("Latitude must be between -90 and 90")
    if not isinstance(lng, (int, float)) or math.isnan(lng) or not -180.0 <= lng <= 180.0:
        raise AttributionValidationError("Longitude must be between -180 and 180")
    if math.isnan(max_distance_km) or max_distance_km <= 0:
        raise AttributionValidationError("max_distance_km must be positive")


def filter_eligible(
    providers: Iterable[Provider],
    service_type: str,
    lat: float,
    lng: float,
    max_distance_km: float,
    excluded_ids: AbstractSet[str] = frozenset(),
    blacklisted_ids: AbstractSet[str] = frozenset(),
) -> List[EligibleProvider]:
    """Providers able to take a job at (lat, lng), closest first.

    The radius check is inclusive and uses the unrounded distance; a
    provider's own travel limit narrows the radius further.
    """
    result: List[EligibleProvider] = []
    for provider in providers:
        if not provider.verified or not provider.available:
            continue
        if service_type not in provider.service_types:
            continue
        if provider.id in excluded_ids:
            continue
        if provider.id in blacklisted_ids:
            continue
        radius = max_distance_km
        if provider.max_travel_km is not None and provider.max_travel_km > 0:
            radius = min(radius, provider.max_travel_km)
        distance = haversine_km(lat, lng, provider.latitude, provider.longitude)
        if distance > radius:
            continue
        result.append(
            EligibleProvider(
                provider_id=provider.id,
                name=provider.name,
                distance_km=round(distance, 1),
                exact_distance_km=distance,
            )
        )
    result.sort(key=lambda p: (p.exact_distance_km, p.provider_id))
    return result


class GeoMatcher:
    def __init__(self, repository: AttributionRepository, blacklist: BlacklistGuard, default_max_distance_km: float = 150.0):
        self._repository = repository
        self._blacklist = blacklist
        self.default_max_distance_km = default_max_distance_km

    def find_eligible(
        self,
        service_type: str,
        lat: float,
        lng: float,
        max_distance_km: Optional[float] = None,
        excluded_ids: AbstractSet[str] = frozenset(),
    ) -> List[EligibleProvider]:
        radius = self.default_max_distance_km if max_distance_km is None else float(max_distance_km)
        validate_location(service_type, lat, lng, radius)
        providers = self._repository.list_providers()
        blacklisted = self._blacklist.blacklisted_ids()
        eligible = filter_eligible(
            providers,
            service_type=service_type,
            lat=lat,
            lng=lng,
            max_distance_km=radius,
            excluded_ids=excluded_ids,
            blacklisted_ids=blacklisted,
        )
        logger.info(
            "Eligibility lookup service_type=%s radius_km=%s candidates=%d eligible=%d blacklisted=%d",
            service_type,
            radius,
            len(providers),
            len(eligible),
            len(blacklisted),
        )
        return eligible

    def count_eligible(
        self,
        service_type: str,
        lat: float,
        lng: float,
        max_distance_km: Optional[float] = None,
        excluded_ids: AbstractSet[str] = frozenset(),
    ) -> int:
        return len(self.find_eligible(service_type, lat, lng, max_distance_km, excluded_ids))

    def is_in_service_area(self, provider_id: str, lat: float, lng: float, max_distance_km: Optional[float] = None) -> bool:
        provider = self._repository.get_provider(provider_id)
        if provider is None:
            raise AttributionNotFoundError("Provider not found")
        radius = self.default_max_distance_km if max_distance_km is None else float(max_distance_km)
        if not provider.verified or not provider.available:
            return False
        if provider.max_travel_km is not None and provider.max_travel_km > 0:
            radius = min(radius, provider.max_travel_km)
        return haversine_km(lat, lng, provider.latitude, provider.longitude) <= radius
