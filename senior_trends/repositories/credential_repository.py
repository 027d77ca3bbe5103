from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from senior_trends.repositories.common import parse_timestamp, to_iso, utc_now_iso
from senior_trends.repositories.database import Database

CredentialStatus = Literal["active", "limited", "error"]
CREDENTIAL_STATUSES: frozenset[str] = frozenset({"active", "limited", "error"})
RESET_AT_STATE_KEY = "quota_reset_at"


@dataclass
class CredentialState:
    api_key: str
    usage_units: int = 0
    status: CredentialStatus = "active"
    error_count: int = 0
    last_validated_at: datetime | None = None


@dataclass
class LedgerSnapshot:
    credentials: dict[str, CredentialState] = field(default_factory=dict)
    reset_at: datetime | None = None


class CredentialRepository:
    """sqlite-backed ledger store: registered keys, per-key usage and the shared reset time."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def load(self) -> LedgerSnapshot:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT api_key, status, usage_units, error_count, last_validated_at
                FROM credentials
                ORDER BY position ASC, created_at ASC
                """
            ).fetchall()
            reset_row = conn.execute(
                "SELECT value_text FROM quota_state WHERE state_key = ?",
                (RESET_AT_STATE_KEY,),
            ).fetchone()

        credentials: dict[str, CredentialState] = {}
        for row in rows:
            api_key = str(row["api_key"])
            credentials[api_key] = CredentialState(
                api_key=api_key,
                usage_units=max(0, int(row["usage_units"])),
                status=_coerce_status(row["status"]),
                error_count=max(0, int(row["error_count"])),
                last_validated_at=parse_timestamp(row["last_validated_at"]),
            )

        reset_at = parse_timestamp(reset_row["value_text"]) if reset_row is not None else None
        return LedgerSnapshot(credentials=credentials, reset_at=reset_at)

    def save(self, snapshot: LedgerSnapshot) -> None:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            existing = {
                str(row["api_key"])
                for row in conn.execute("SELECT api_key FROM credentials").fetchall()
            }
            for stale_key in existing - set(snapshot.credentials):
                conn.execute("DELETE FROM credentials WHERE api_key = ?", (stale_key,))

            for position, state in enumerate(snapshot.credentials.values()):
                conn.execute(
                    """
                    INSERT INTO credentials
                    (
                        api_key,
                        status,
                        usage_units,
                        error_count,
                        last_validated_at,
                        position,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(api_key) DO UPDATE SET
                        status = excluded.status,
                        usage_units = excluded.usage_units,
                        error_count = excluded.error_count,
                        last_validated_at = excluded.last_validated_at,
                        position = excluded.position,
                        updated_at = excluded.updated_at
                    """,
                    (
                        state.api_key,
                        state.status,
                        state.usage_units,
                        state.error_count,
                        to_iso(state.last_validated_at),
                        position,
                        now_iso,
                        now_iso,
                    ),
                )

            reset_iso = to_iso(snapshot.reset_at)
            if reset_iso is not None:
                conn.execute(
                    """
                    INSERT INTO quota_state (state_key, value_text, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(state_key) DO UPDATE SET
                        value_text = excluded.value_text,
                        updated_at = excluded.updated_at
                    """,
                    (RESET_AT_STATE_KEY, reset_iso, now_iso),
                )


def _coerce_status(raw_value: object) -> CredentialStatus:
    if isinstance(raw_value, str) and raw_value in CREDENTIAL_STATUSES:
        if raw_value == "limited":
            return "limited"
        if raw_value == "error":
            return "error"
    return "active"
