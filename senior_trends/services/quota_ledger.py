from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Protocol

from senior_trends.repositories.credential_repository import (
    CredentialState,
    CredentialStatus,
    LedgerSnapshot,
)

LOGGER = logging.getLogger("senior_trends.quota")


class LedgerStore(Protocol):
    def load(self) -> LedgerSnapshot:
        ...

    def save(self, snapshot: LedgerSnapshot) -> None:
        ...


class InMemoryLedgerStore:
    def __init__(self) -> None:
        self._snapshot = LedgerSnapshot()

    def load(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            credentials={key: replace(state) for key, state in self._snapshot.credentials.items()},
            reset_at=self._snapshot.reset_at,
        )

    def save(self, snapshot: LedgerSnapshot) -> None:
        self._snapshot = LedgerSnapshot(
            credentials={key: replace(state) for key, state in snapshot.credentials.items()},
            reset_at=snapshot.reset_at,
        )


@dataclass(frozen=True)
class QuotaStats:
    total_credentials: int
    active_credentials: int
    limited_credentials: int
    error_credentials: int
    total_used_units: int
    total_available_units: int
    total_remaining_units: int
    utilization_percent: float
    next_reset_at: datetime | None


def next_utc_midnight(now: datetime) -> datetime:
    current = now.astimezone(UTC)
    tomorrow = current.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=UTC)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class QuotaLedger:
    """
    Per-credential usage accounting against a shared daily cap.

    A single ledger instance is the source of truth for every consumer in the
    process. State is loaded from the injected store once and written back after
    each mutation, so usage survives restarts until the next UTC midnight.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        daily_limit: int = 10_000,
        disable_fraction: float = 0.98,
        warning_fraction: float = 0.8,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._daily_limit = max(1, daily_limit)
        self._disable_fraction = min(max(disable_fraction, 0.0), 1.0)
        self._warning_fraction = min(max(warning_fraction, 0.0), self._disable_fraction)
        self._now = now

        snapshot = store.load()
        self._credentials: dict[str, CredentialState] = dict(snapshot.credentials)
        self._reset_at = snapshot.reset_at or next_utc_midnight(self._now())

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    @property
    def disable_threshold_units(self) -> int:
        return math.floor(self._daily_limit * self._disable_fraction)

    @property
    def warning_threshold_units(self) -> int:
        return math.floor(self._daily_limit * self._warning_fraction)

    @property
    def reset_at(self) -> datetime:
        return self._reset_at

    def keys(self) -> list[str]:
        return list(self._credentials)

    def has_credential(self, api_key: str) -> bool:
        return api_key in self._credentials

    def credential_state(self, api_key: str) -> CredentialState | None:
        state = self._credentials.get(api_key)
        if state is None:
            return None
        return replace(state)

    def register(self, api_key: str) -> bool:
        normalized = api_key.strip()
        if not normalized or normalized in self._credentials:
            return False
        self._credentials[normalized] = CredentialState(api_key=normalized)
        self._persist()
        return True

    def remove(self, api_key: str) -> bool:
        if self._credentials.pop(api_key, None) is None:
            return False
        self._persist()
        return True

    def record_usage(self, api_key: str, units: int) -> None:
        state = self._credentials.get(api_key)
        if state is None or units <= 0 or units > self._daily_limit:
            return

        state.usage_units += units
        if state.usage_units >= self.disable_threshold_units and state.status == "active":
            state.status = "limited"
            LOGGER.warning(
                "credential reached disable threshold key=%s usage=%s threshold=%s",
                mask_api_key(api_key),
                state.usage_units,
                self.disable_threshold_units,
            )
        self._persist()

    def check_and_reset(self) -> bool:
        now = self._now()
        if now < self._reset_at:
            return False

        for state in self._credentials.values():
            state.usage_units = 0
            state.error_count = 0
            state.status = "active"
        self._reset_at = next_utc_midnight(now)
        self._persist()
        LOGGER.info(
            "daily quota reset credentials=%s next_reset_at=%s",
            len(self._credentials),
            self._reset_at.isoformat(),
        )
        return True

    def remaining_units(self, api_key: str) -> int:
        state = self._credentials.get(api_key)
        if state is None:
            return 0
        return max(0, self._daily_limit - state.usage_units)

    def headroom_units(self, api_key: str) -> int:
        """Units left before the credential crosses the disable threshold."""
        state = self._credentials.get(api_key)
        if state is None:
            return 0
        return self.disable_threshold_units - state.usage_units

    def total_remaining_units(self) -> int:
        return sum(self.remaining_units(api_key) for api_key in self._credentials)

    def is_warning(self, api_key: str) -> bool:
        state = self._credentials.get(api_key)
        if state is None:
            return False
        return state.usage_units >= self.warning_threshold_units

    def set_status(
        self,
        api_key: str,
        status: CredentialStatus,
        *,
        reset_errors: bool = False,
    ) -> None:
        state = self._credentials.get(api_key)
        if state is None:
            return
        state.status = status
        if reset_errors:
            state.error_count = 0
        self._persist()

    def increment_errors(self, api_key: str) -> int:
        state = self._credentials.get(api_key)
        if state is None:
            return 0
        state.error_count += 1
        self._persist()
        return state.error_count

    def clear_errors(self, api_key: str) -> None:
        state = self._credentials.get(api_key)
        if state is None or state.error_count == 0:
            return
        state.error_count = 0
        self._persist()

    def mark_validated(self, api_key: str) -> None:
        state = self._credentials.get(api_key)
        if state is None:
            return
        state.last_validated_at = self._now()
        self._persist()

    def aggregate_stats(self) -> QuotaStats:
        states = list(self._credentials.values())
        total_used = sum(state.usage_units for state in states)
        total_available = self._daily_limit * len(states)
        total_remaining = sum(max(0, self._daily_limit - state.usage_units) for state in states)
        utilization = (total_used / total_available * 100) if total_available > 0 else 0.0
        return QuotaStats(
            total_credentials=len(states),
            active_credentials=sum(1 for state in states if state.status == "active"),
            limited_credentials=sum(1 for state in states if state.status == "limited"),
            error_credentials=sum(1 for state in states if state.status == "error"),
            total_used_units=total_used,
            total_available_units=total_available,
            total_remaining_units=total_remaining,
            utilization_percent=round(min(utilization, 100.0), 2),
            next_reset_at=self._reset_at,
        )

    def _persist(self) -> None:
        self._store.save(
            LedgerSnapshot(
                credentials={key: replace(state) for key, state in self._credentials.items()},
                reset_at=self._reset_at,
            )
        )


def mask_api_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "***"
    return f"{api_key[:4]}...{api_key[-4:]}"
