from __future__ import annotations

import logging
from dataclasses import dataclass

from senior_trends.repositories.credential_repository import CredentialStatus
from senior_trends.services.quota_ledger import QuotaLedger, mask_api_key

LOGGER = logging.getLogger("senior_trends.credentials")

QUOTA_ERROR_REASONS: frozenset[str] = frozenset(
    {
        "quotaexceeded",
        "dailylimitexceeded",
        "ratelimitexceeded",
        "userratelimitexceeded",
    }
)
AUTH_ERROR_REASONS: frozenset[str] = frozenset(
    {
        "keyinvalid",
        "keyexpired",
        "api_key_invalid",
        "accessnotconfigured",
        "iprefererblocked",
        "unauthorized",
        "autherror",
    }
)


@dataclass(frozen=True)
class CredentialFailure:
    status_code: int | None
    reason: str | None = None
    message: str | None = None

    @property
    def is_quota_error(self) -> bool:
        if self.status_code != 403:
            return False
        if self.reason is None:
            return True
        return self.reason.strip().lower() in QUOTA_ERROR_REASONS

    @property
    def is_auth_error(self) -> bool:
        if self.status_code == 401:
            return True
        if self.status_code not in (400, 403) or self.reason is None:
            return False
        return self.reason.strip().lower() in AUTH_ERROR_REASONS


@dataclass(frozen=True)
class CredentialStatusView:
    api_key: str
    masked_key: str
    status: CredentialStatus
    usage_units: int
    remaining_units: int
    error_count: int
    warning: bool
    last_validated_at: str | None


class CredentialPool:
    """
    Round-robin selection over registered API keys.

    Keys that failed once or were flagged by a spurious 403 are promoted back to
    `active` whenever they still have at least `min_recovery_units` of headroom
    below the disable threshold. Only genuine exhaustion or repeated failures
    keep a key out of rotation.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        *,
        min_recovery_units: int = 100,
        error_threshold: int = 3,
    ) -> None:
        self._ledger = ledger
        self._min_recovery_units = max(0, min_recovery_units)
        self._error_threshold = max(1, error_threshold)
        self._cursor = 0
        self._rejected_keys: set[str] = set()

    @property
    def ledger(self) -> QuotaLedger:
        return self._ledger

    def __len__(self) -> int:
        return len(self._ledger.keys())

    def select_credential(self) -> str | None:
        self._check_and_reset()
        self._recover_credentials()

        keys = self._ledger.keys()
        if not keys:
            return None

        start = self._cursor % len(keys)
        self._cursor = (start + 1) % len(keys)

        for offset in range(len(keys)):
            api_key = keys[(start + offset) % len(keys)]
            state = self._ledger.credential_state(api_key)
            if state is None or state.status != "active":
                continue
            if state.usage_units < self._ledger.disable_threshold_units:
                return api_key

        return self._least_used_fallback(keys)

    def report_usage(self, api_key: str, units: int) -> None:
        self._ledger.record_usage(api_key, units)

    def report_success(self, api_key: str) -> None:
        self._ledger.clear_errors(api_key)

    def report_error(self, api_key: str, failure: CredentialFailure) -> CredentialStatus | None:
        state = self._ledger.credential_state(api_key)
        if state is None:
            return None

        error_count = self._ledger.increment_errors(api_key)
        masked = mask_api_key(api_key)

        if failure.is_auth_error:
            self._rejected_keys.add(api_key)
            self._ledger.set_status(api_key, "error")
            LOGGER.warning(
                "credential rejected by remote service key=%s status=%s reason=%s",
                masked,
                failure.status_code,
                failure.reason,
            )
            return "error"

        if failure.is_quota_error:
            if self._has_recovery_headroom(api_key):
                self._ledger.set_status(api_key, "active", reset_errors=True)
                LOGGER.info(
                    "quota error ignored, headroom remains key=%s headroom=%s",
                    masked,
                    self._ledger.headroom_units(api_key),
                )
                return "active"
            self._ledger.set_status(api_key, "limited")
            LOGGER.warning("credential quota exhausted key=%s", masked)
            return "limited"

        if error_count < self._error_threshold:
            return state.status

        if self._has_recovery_headroom(api_key):
            self._ledger.set_status(api_key, "active", reset_errors=True)
            return "active"

        self._ledger.set_status(api_key, "error")
        LOGGER.warning(
            "credential disabled after repeated errors key=%s errors=%s status=%s",
            masked,
            error_count,
            failure.status_code,
        )
        return "error"

    def reset_credential(self, api_key: str) -> bool:
        if not self._ledger.has_credential(api_key):
            return False
        self._rejected_keys.discard(api_key)
        self._ledger.set_status(api_key, "active", reset_errors=True)
        LOGGER.info("credential manually reset key=%s", mask_api_key(api_key))
        return True

    def has_usable_credential(self, units: int = 1) -> bool:
        self._check_and_reset()
        for api_key in self._ledger.keys():
            state = self._ledger.credential_state(api_key)
            if state is None or state.status == "error":
                continue
            if self._ledger.remaining_units(api_key) >= units:
                return True
        return False

    def has_active_credential(self, units: int = 1) -> bool:
        """Stricter than `has_usable_credential`: limited keys do not count."""
        self._check_and_reset()
        self._recover_credentials()
        for api_key in self._ledger.keys():
            state = self._ledger.credential_state(api_key)
            if state is None or state.status != "active":
                continue
            if (
                state.usage_units < self._ledger.disable_threshold_units
                and self._ledger.remaining_units(api_key) >= units
            ):
                return True
        return False

    def status_views(self) -> list[CredentialStatusView]:
        self._check_and_reset()
        views: list[CredentialStatusView] = []
        for api_key in self._ledger.keys():
            state = self._ledger.credential_state(api_key)
            if state is None:
                continue
            views.append(
                CredentialStatusView(
                    api_key=api_key,
                    masked_key=mask_api_key(api_key),
                    status=state.status,
                    usage_units=state.usage_units,
                    remaining_units=self._ledger.remaining_units(api_key),
                    error_count=state.error_count,
                    warning=self._ledger.is_warning(api_key),
                    last_validated_at=(
                        state.last_validated_at.isoformat()
                        if state.last_validated_at is not None
                        else None
                    ),
                )
            )
        return views

    def _recover_credentials(self) -> None:
        for api_key in self._ledger.keys():
            state = self._ledger.credential_state(api_key)
            if state is None or state.status == "active" or api_key in self._rejected_keys:
                continue
            if self._has_recovery_headroom(api_key):
                self._ledger.set_status(api_key, "active", reset_errors=True)
                LOGGER.info(
                    "credential recovered key=%s previous_status=%s",
                    mask_api_key(api_key),
                    state.status,
                )

    def _check_and_reset(self) -> None:
        if self._ledger.check_and_reset():
            self._rejected_keys.clear()

    def _has_recovery_headroom(self, api_key: str) -> bool:
        return self._ledger.headroom_units(api_key) >= self._min_recovery_units

    def _least_used_fallback(self, keys: list[str]) -> str | None:
        candidates: list[tuple[int, str]] = []
        for api_key in keys:
            state = self._ledger.credential_state(api_key)
            if state is None or state.status == "error":
                continue
            if self._ledger.remaining_units(api_key) <= 0:
                continue
            candidates.append((state.usage_units, api_key))
        if not candidates:
            return None
        return min(candidates, key=lambda candidate: candidate[0])[1]
