import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Iterator, List, Optional

from attribution.errors import AttributionConflictError, AttributionStoreUnavailableError
from attribution.models import (
    Attribution,
    BlacklistEntry,
    EligibilityResponse,
    Provider,
    ResponseOutcome,
    ServiceRequest,
)
from attribution.services.repository import (
    ANY,
    UNSET,
    AttributionChanges,
    AttributionGuard,
    AttributionRepository,
    ResponseInvite,
)

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC text so that SQL string comparison orders like time.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SqliteAttributionRepository(AttributionRepository):
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = self._connect()
                try:
                    with conn:
                        yield conn
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                logger.exception("Attribution store operation failed")
                raise AttributionStoreUnavailableError("Attribution store unavailable; retry the operation") from exc

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS service_requests (
                    id TEXT PRIMARY KEY,
                    service_type TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    amount REAL NOT NULL DEFAULT 0,
                    scheduled_date TEXT,
                    assigned_provider_id TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    service_types_json TEXT NOT NULL DEFAULT '[]',
                    verified INTEGER NOT NULL DEFAULT 0,
                    available INTEGER NOT NULL DEFAULT 1,
                    max_travel_km REAL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS attributions (
                    id TEXT PRIMARY KEY,
                    service_request_id TEXT NOT NULL,
                    service_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    service_latitude REAL NOT NULL,
                    service_longitude REAL NOT NULL,
                    max_distance_km REAL NOT NULL,
                    broadcast_count INTEGER NOT NULL DEFAULT 0,
                    accepted_provider_id TEXT,
                    round_expires_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            # One active attribution per service request, enforced by the store itself.
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS attributions_one_active_per_request
                ON attributions (service_request_id)
                WHERE status IN ('broadcasting', 're_broadcasting', 'attributed')
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS attribution_exclusions (
                    attribution_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (attribution_id, provider_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS eligibility_responses (
                    attribution_id TEXT NOT NULL,
                    round INTEGER NOT NULL,
                    provider_id TEXT NOT NULL,
                    outcome TEXT NOT NULL DEFAULT 'pending',
                    reason TEXT,
                    distance_km REAL,
                    created_at TEXT NOT NULL,
                    responded_at TEXT,
                    PRIMARY KEY (attribution_id, round, provider_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS provider_blacklist (
                    provider_id TEXT PRIMARY KEY,
                    consecutive_refusal_count INTEGER NOT NULL DEFAULT 0,
                    total_refusal_count INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    reason TEXT NOT NULL DEFAULT '',
                    last_round_key TEXT,
                    blacklisted_at TEXT,
                    updated_at TEXT
                )
                """
            )

    # Service requests

    def _row_to_service_request(self, row: sqlite3.Row) -> ServiceRequest:
        return ServiceRequest(
            id=row["id"],
            service_type=row["service_type"],
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            amount=float(row["amount"]),
            scheduled_date=row["scheduled_date"],
            assigned_provider_id=row["assigned_provider_id"],
        )

    def save_service_request(self, request: ServiceRequest) -> ServiceRequest:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO service_requests (id, service_type, latitude, longitude, amount, scheduled_date, assigned_provider_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    service_type = excluded.service_type,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    amount = excluded.amount,
                    scheduled_date = excluded.scheduled_date
                """,
                (
                    request.id,
                    request.service_type,
                    request.latitude,
                    request.longitude,
                    request.amount,
                    request.scheduled_date,
                    request.assigned_provider_id,
                ),
            )
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request.id,)).fetchone()
        return self._row_to_service_request(row)

    def get_service_request(self, service_request_id: str) -> Optional[ServiceRequest]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (service_request_id,)).fetchone()
        return self._row_to_service_request(row) if row else None

    def set_assigned_provider(self, service_request_id: str, provider_id: Optional[str]) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE service_requests SET assigned_provider_id = ? WHERE id = ?",
                (provider_id, service_request_id),
            )

    # Providers

    def _row_to_provider(self, row: sqlite3.Row) -> Provider:
        try:
            service_types = json.loads(row["service_types_json"] or "[]")
        except json.JSONDecodeError:
            logger.warning("Provider %s has unreadable service types", row["id"])
            service_types = []
        if not isinstance(service_types, list):
            service_types = []
        return Provider(
            id=row["id"],
            name=row["name"],
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            service_types=service_types,
            verified=bool(row["verified"]),
            available=bool(row["available"]),
            max_travel_km=row["max_travel_km"],
        )

    def save_provider(self, provider: Provider) -> Provider:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO providers (id, name, latitude, longitude, service_types_json, verified, available, max_travel_km)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    service_types_json = excluded.service_types_json,
                    verified = excluded.verified,
                    available = excluded.available,
                    max_travel_km = excluded.max_travel_km
                """,
                (
                    provider.id,
                    provider.name,
                    provider.latitude,
                    provider.longitude,
                    json.dumps(list(provider.service_types)),
                    int(provider.verified),
                    int(provider.available),
                    provider.max_travel_km,
                ),
            )
        return provider

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def list_providers(self) -> List[Provider]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM providers ORDER BY id").fetchall()
        return [self._row_to_provider(row) for row in rows]

    # Attributions

    def _load_attribution(self, conn: sqlite3.Connection, attribution_id: str) -> Optional[Attribution]:
        row = conn.execute("SELECT * FROM attributions WHERE id = ?", (attribution_id,)).fetchone()
        if not row:
            return None
        excluded = conn.execute(
            "SELECT provider_id FROM attribution_exclusions WHERE attribution_id = ?",
            (attribution_id,),
        ).fetchall()
        return Attribution(
            id=row["id"],
            service_request_id=row["service_request_id"],
            service_type=row["service_type"],
            status=row["status"],
            service_latitude=float(row["service_latitude"]),
            service_longitude=float(row["service_longitude"]),
            max_distance_km=float(row["max_distance_km"]),
            broadcast_count=int(row["broadcast_count"]),
            excluded_provider_ids=frozenset(str(r["provider_id"]) for r in excluded),
            accepted_provider_id=row["accepted_provider_id"],
            round_expires_at=_parse_iso(row["round_expires_at"]),
            created_at=_parse_iso(row["created_at"]),
            updated_at=_parse_iso(row["updated_at"]),
        )

    def create_attribution(self, attribution: Attribution) -> Attribution:
        with self._session() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO attributions (
                        id, service_request_id, service_type, status, service_latitude, service_longitude,
                        max_distance_km, broadcast_count, accepted_provider_id, round_expires_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        attribution.id,
                        attribution.service_request_id,
                        attribution.service_type,
                        attribution.status,
                        attribution.service_latitude,
                        attribution.service_longitude,
                        attribution.max_distance_km,
                        attribution.broadcast_count,
                        attribution.accepted_provider_id,
                        _iso(attribution.round_expires_at),
                        _iso(attribution.created_at),
                        _iso(attribution.updated_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise AttributionConflictError(
                    f"Service request {attribution.service_request_id} already has an active attribution"
                ) from exc
            for provider_id in attribution.excluded_provider_ids:
                conn.execute(
                    "INSERT OR IGNORE INTO attribution_exclusions (attribution_id, provider_id, created_at) VALUES (?, ?, ?)",
                    (attribution.id, provider_id, _iso(attribution.created_at)),
                )
            created = self._load_attribution(conn, attribution.id)
        assert created is not None
        return created

    def get_attribution(self, attribution_id: str) -> Optional[Attribution]:
        with self._session() as conn:
            return self._load_attribution(conn, attribution_id)

    def list_attributions(self, statuses: Optional[Iterable[str]] = None) -> List[Attribution]:
        query = "SELECT id FROM attributions"
        params: List[Any] = []
        if statuses is not None:
            wanted = list(statuses)
            if not wanted:
                return []
            query += f" WHERE status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        query += " ORDER BY created_at DESC"
        with self._session() as conn:
            ids = [row["id"] for row in conn.execute(query, tuple(params)).fetchall()]
            loaded = [self._load_attribution(conn, attribution_id) for attribution_id in ids]
        return [row for row in loaded if row is not None]

    def compare_and_swap_status(
        self,
        attribution_id: str,
        guard: AttributionGuard,
        changes: AttributionChanges,
    ) -> Optional[Attribution]:
        if not guard.statuses:
            return None
        now = _utcnow()
        assignments = ["updated_at = ?"]
        set_params: List[Any] = [_iso(now)]
        if changes.status is not None:
            assignments.append("status = ?")
            set_params.append(changes.status)
        if changes.accepted_provider_id is not UNSET:
            assignments.append("accepted_provider_id = ?")
            set_params.append(changes.accepted_provider_id)
        if changes.increment_broadcast:
            assignments.append("broadcast_count = broadcast_count + 1")
        if changes.round_expires_at is not UNSET:
            assignments.append("round_expires_at = ?")
            set_params.append(_iso(changes.round_expires_at))  # type: ignore[arg-type]

        statuses = sorted(guard.statuses)
        conditions = ["id = ?", f"status IN ({', '.join('?' for _ in statuses)})"]
        where_params: List[Any] = [attribution_id, *statuses]
        if guard.accepted_provider_id is not ANY:
            if guard.accepted_provider_id is None:
                conditions.append("accepted_provider_id IS NULL")
            else:
                conditions.append("accepted_provider_id = ?")
                where_params.append(guard.accepted_provider_id)
        if guard.broadcast_count is not None:
            conditions.append("broadcast_count = ?")
            where_params.append(guard.broadcast_count)
        if guard.open_at is not None:
            conditions.append("round_expires_at IS NOT NULL AND round_expires_at > ?")
            where_params.append(_iso(guard.open_at))
        if guard.closed_at is not None:
            conditions.append("round_expires_at IS NOT NULL AND round_expires_at <= ?")
            where_params.append(_iso(guard.closed_at))

        sql = f"UPDATE attributions SET {', '.join(assignments)} WHERE {' AND '.join(conditions)}"
        with self._session() as conn:
            cursor = conn.execute(sql, tuple(set_params + where_params))
            if cursor.rowcount != 1:
                return None
            for provider_id in sorted(changes.add_excluded):
                conn.execute(
                    "INSERT OR IGNORE INTO attribution_exclusions (attribution_id, provider_id, created_at) VALUES (?, ?, ?)",
                    (attribution_id, provider_id, _iso(now)),
                )
            return self._load_attribution(conn, attribution_id)

    # Eligibility responses

    def _row_to_response(self, row: sqlite3.Row) -> EligibilityResponse:
        return EligibilityResponse(
            attribution_id=row["attribution_id"],
            provider_id=row["provider_id"],
            round=int(row["round"]),
            outcome=row["outcome"],
            reason=row["reason"],
            distance_km=row["distance_km"],
            created_at=_parse_iso(row["created_at"]),
            responded_at=_parse_iso(row["responded_at"]),
        )

    def open_responses(self, attribution_id: str, round: int, invites: List[ResponseInvite]) -> None:
        now_iso = _iso(_utcnow())
        with self._session() as conn:
            conn.executemany(
                """
                INSERT OR IGNORE INTO eligibility_responses (attribution_id, round, provider_id, outcome, distance_km, created_at)
                VALUES (?, ?, ?, 'pending', ?, ?)
                """,
                [(attribution_id, round, invite.provider_id, invite.distance_km, now_iso) for invite in invites],
            )

    def close_response(
        self,
        attribution_id: str,
        round: int,
        provider_id: str,
        outcome: ResponseOutcome,
        reason: Optional[str] = None,
    ) -> bool:
        with self._session() as conn:
            cursor = conn.execute(
                """
                UPDATE eligibility_responses
                SET outcome = ?, reason = ?, responded_at = ?
                WHERE attribution_id = ? AND round = ? AND provider_id = ? AND outcome = 'pending'
                """,
                (outcome, reason, _iso(_utcnow()), attribution_id, round, provider_id),
            )
            return cursor.rowcount == 1

    def close_pending_responses(self, attribution_id: str, round: int, outcome: ResponseOutcome) -> List[str]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT provider_id FROM eligibility_responses
                WHERE attribution_id = ? AND round = ? AND outcome = 'pending'
                ORDER BY provider_id
                """,
                (attribution_id, round),
            ).fetchall()
            conn.execute(
                """
                UPDATE eligibility_responses
                SET outcome = ?, responded_at = ?
                WHERE attribution_id = ? AND round = ? AND outcome = 'pending'
                """,
                (outcome, _iso(_utcnow()), attribution_id, round),
            )
        return [str(row["provider_id"]) for row in rows]

    def get_response(self, attribution_id: str, round: int, provider_id: str) -> Optional[EligibilityResponse]:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT * FROM eligibility_responses
                WHERE attribution_id = ? AND round = ? AND provider_id = ?
                """,
                (attribution_id, round, provider_id),
            ).fetchone()
        return self._row_to_response(row) if row else None

    def list_responses(self, attribution_id: str) -> List[EligibilityResponse]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM eligibility_responses WHERE attribution_id = ? ORDER BY round, provider_id",
                (attribution_id,),
            ).fetchall()
        return [self._row_to_response(row) for row in rows]

    def list_responses_for_provider(self, provider_id: str, limit: int = 20) -> List[EligibilityResponse]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM eligibility_responses WHERE provider_id = ? ORDER BY created_at DESC LIMIT ?",
                (provider_id, limit),
            ).fetchall()
        return [self._row_to_response(row) for row in rows]

    # Blacklist

    def _row_to_blacklist_entry(self, row: sqlite3.Row) -> BlacklistEntry:
        return BlacklistEntry(
            provider_id=row["provider_id"],
            consecutive_refusal_count=int(row["consecutive_refusal_count"]),
            total_refusal_count=int(row["total_refusal_count"]),
            is_active=bool(row["is_active"]),
            reason=row["reason"] or "",
            last_round_key=row["last_round_key"],
            blacklisted_at=_parse_iso(row["blacklisted_at"]),
            updated_at=_parse_iso(row["updated_at"]),
        )

    def increment_refusal_counter(self, provider_id: str, round_key: str) -> Optional[BlacklistEntry]:
        now_iso = _iso(_utcnow())
        with self._session() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO provider_blacklist (provider_id, updated_at) VALUES (?, ?)",
                (provider_id, now_iso),
            )
            cursor = conn.execute(
                """
                UPDATE provider_blacklist
                SET consecutive_refusal_count = consecutive_refusal_count + 1,
                    total_refusal_count = total_refusal_count + 1,
                    last_round_key = ?,
                    updated_at = ?
                WHERE provider_id = ? AND (last_round_key IS NULL OR last_round_key != ?)
                """,
                (round_key, now_iso, provider_id, round_key),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM provider_blacklist WHERE provider_id = ?", (provider_id,)).fetchone()
        return self._row_to_blacklist_entry(row)

    def activate_blacklist(self, provider_id: str, reason: str, min_count: int) -> bool:
        now_iso = _iso(_utcnow())
        with self._session() as conn:
            cursor = conn.execute(
                """
                UPDATE provider_blacklist
                SET is_active = 1, reason = ?, blacklisted_at = COALESCE(blacklisted_at, ?), updated_at = ?
                WHERE provider_id = ? AND consecutive_refusal_count >= ?
                """,
                (reason, now_iso, now_iso, provider_id, min_count),
            )
            return cursor.rowcount == 1

    def force_blacklist(self, provider_id: str, round_key: str, reason: str, min_count: int) -> BlacklistEntry:
        now_iso = _iso(_utcnow())
        with self._session() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO provider_blacklist (provider_id, updated_at) VALUES (?, ?)",
                (provider_id, now_iso),
            )
            conn.execute(
                """
                UPDATE provider_blacklist
                SET consecutive_refusal_count = MAX(
                        ?,
                        consecutive_refusal_count
                        + CASE WHEN last_round_key IS NULL OR last_round_key != ? THEN 1 ELSE 0 END
                    ),
                    total_refusal_count = total_refusal_count
                        + CASE WHEN last_round_key IS NULL OR last_round_key != ? THEN 1 ELSE 0 END,
                    last_round_key = ?,
                    is_active = 1,
                    reason = ?,
                    blacklisted_at = COALESCE(blacklisted_at, ?),
                    updated_at = ?
                WHERE provider_id = ?
                """,
                (min_count, round_key, round_key, round_key, reason, now_iso, now_iso, provider_id),
            )
            row = conn.execute("SELECT * FROM provider_blacklist WHERE provider_id = ?", (provider_id,)).fetchone()
        return self._row_to_blacklist_entry(row)

    def reset_refusal_counter(self, provider_id: str) -> None:
        with self._session() as conn:
            conn.execute(
                """
                UPDATE provider_blacklist
                SET consecutive_refusal_count = 0, is_active = 0, reason = '', blacklisted_at = NULL, updated_at = ?
                WHERE provider_id = ?
                """,
                (_iso(_utcnow()), provider_id),
            )

    def lift_blacklist(self, provider_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute(
                """
                UPDATE provider_blacklist
                SET consecutive_refusal_count = 0, is_active = 0, reason = '', blacklisted_at = NULL, updated_at = ?
                WHERE provider_id = ? AND is_active = 1
                """,
                (_iso(_utcnow()), provider_id),
            )
            return cursor.rowcount == 1

    def get_blacklist_entry(self, provider_id: str) -> Optional[BlacklistEntry]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM provider_blacklist WHERE provider_id = ?", (provider_id,)).fetchone()
        return self._row_to_blacklist_entry(row) if row else None

    def list_blacklist_entries(self, active_only: bool = False) -> List[BlacklistEntry]:
        query = "SELECT * FROM provider_blacklist"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY provider_id"
        with self._session() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_blacklist_entry(row) for row in rows]
