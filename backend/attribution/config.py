import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "attribution.sqlite3")


def _positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _positive_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    default_max_distance_km: float = 150.0
    round_ttl_minutes: int = 120
    blacklist_threshold: int = 2
    notification_queue_size: int = 1000
    operations_recipient_id: str = "operations"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("ATTRIBUTION_DB_PATH", DEFAULT_DB_PATH),
            default_max_distance_km=_positive_float_env("ATTRIBUTION_DEFAULT_MAX_DISTANCE_KM", 150.0),
            round_ttl_minutes=_positive_int_env("ATTRIBUTION_ROUND_TTL_MINUTES", 120),
            blacklist_threshold=_positive_int_env("BLACKLIST_REFUSAL_THRESHOLD", 2),
            notification_queue_size=_positive_int_env("NOTIFICATION_QUEUE_SIZE", 1000),
            operations_recipient_id=os.getenv("OPERATIONS_RECIPIENT_ID", "operations").strip() or "operations",
        )
