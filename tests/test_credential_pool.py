from __future__ import annotations

from senior_trends.services.credential_pool import CredentialFailure, CredentialPool
from senior_trends.services.quota_ledger import InMemoryLedgerStore, QuotaLedger
from tests.fakes import KEY_ALPHA, KEY_BRAVO, KEY_CHARLIE, make_pool

QUOTA_FAILURE = CredentialFailure(status_code=403, reason="quotaExceeded")
AUTH_FAILURE = CredentialFailure(status_code=400, reason="keyInvalid")
SERVER_FAILURE = CredentialFailure(status_code=500, reason="backendError")


def _status(pool: CredentialPool, api_key: str) -> str | None:
    state = pool.ledger.credential_state(api_key)
    return state.status if state is not None else None


def test_selection_rotates_round_robin() -> None:
    pool = make_pool(KEY_ALPHA, KEY_BRAVO, KEY_CHARLIE)

    picks = [pool.select_credential() for _ in range(4)]

    assert picks == [KEY_ALPHA, KEY_BRAVO, KEY_CHARLIE, KEY_ALPHA]


def test_empty_pool_selects_nothing() -> None:
    pool = CredentialPool(QuotaLedger(InMemoryLedgerStore()))
    assert pool.select_credential() is None
    assert pool.has_usable_credential() is False
    assert len(pool) == 0


def test_spurious_quota_error_keeps_key_active_while_headroom_remains() -> None:
    pool = make_pool(KEY_ALPHA, usage={KEY_ALPHA: 500})

    assert pool.report_error(KEY_ALPHA, QUOTA_FAILURE) == "active"
    assert _status(pool, KEY_ALPHA) == "active"
    assert pool.select_credential() == KEY_ALPHA


def test_quota_error_without_headroom_limits_key() -> None:
    pool = make_pool(KEY_ALPHA, KEY_BRAVO, usage={KEY_ALPHA: 9_750})

    assert pool.report_error(KEY_ALPHA, QUOTA_FAILURE) == "limited"
    assert _status(pool, KEY_ALPHA) == "limited"
    assert {pool.select_credential() for _ in range(4)} == {KEY_BRAVO}


def test_limited_key_recovers_once_headroom_returns() -> None:
    pool = make_pool(KEY_ALPHA)
    pool.ledger.set_status(KEY_ALPHA, "limited")

    assert pool.select_credential() == KEY_ALPHA
    assert _status(pool, KEY_ALPHA) == "active"


def test_rejected_key_stays_out_until_manual_reset() -> None:
    pool = make_pool(KEY_ALPHA, KEY_BRAVO)

    assert pool.report_error(KEY_ALPHA, AUTH_FAILURE) == "error"
    assert {pool.select_credential() for _ in range(4)} == {KEY_BRAVO}

    assert pool.reset_credential(KEY_ALPHA) is True
    assert _status(pool, KEY_ALPHA) == "active"
    assert KEY_ALPHA in {pool.select_credential() for _ in range(4)}
    assert pool.reset_credential("AIzaMissing") is False


def test_repeated_errors_disable_key_without_headroom() -> None:
    pool = make_pool(KEY_ALPHA, usage={KEY_ALPHA: 9_750})

    assert pool.report_error(KEY_ALPHA, SERVER_FAILURE) == "active"
    assert pool.report_error(KEY_ALPHA, SERVER_FAILURE) == "active"
    assert pool.report_error(KEY_ALPHA, SERVER_FAILURE) == "error"
    assert _status(pool, KEY_ALPHA) == "error"


def test_repeated_errors_with_headroom_clear_the_count() -> None:
    pool = make_pool(KEY_ALPHA)

    for _ in range(3):
        pool.report_error(KEY_ALPHA, SERVER_FAILURE)

    state = pool.ledger.credential_state(KEY_ALPHA)
    assert state is not None
    assert state.status == "active"
    assert state.error_count == 0


def test_success_clears_error_count() -> None:
    pool = make_pool(KEY_ALPHA)
    pool.report_error(KEY_ALPHA, SERVER_FAILURE)
    pool.report_success(KEY_ALPHA)

    state = pool.ledger.credential_state(KEY_ALPHA)
    assert state is not None and state.error_count == 0


def test_least_used_key_is_chosen_when_every_key_is_limited() -> None:
    pool = make_pool(KEY_ALPHA, KEY_BRAVO, usage={KEY_ALPHA: 9_900, KEY_BRAVO: 9_850})

    assert _status(pool, KEY_ALPHA) == "limited"
    assert _status(pool, KEY_BRAVO) == "limited"
    assert pool.select_credential() == KEY_BRAVO


def test_fully_spent_pool_has_no_usable_credential() -> None:
    pool = make_pool(KEY_ALPHA, usage={KEY_ALPHA: 10_000})

    assert pool.select_credential() is None
    assert pool.has_usable_credential() is False


def test_status_views_mask_keys() -> None:
    pool = make_pool(KEY_ALPHA, usage={KEY_ALPHA: 8_500})

    [view] = pool.status_views()

    assert view.api_key == KEY_ALPHA
    assert view.masked_key == "AIza...0000"
    assert view.usage_units == 8_500
    assert view.remaining_units == 1_500
    assert view.warning is True
    assert view.last_validated_at is None


def test_failure_classification() -> None:
    assert QUOTA_FAILURE.is_quota_error is True
    assert CredentialFailure(status_code=403).is_quota_error is True
    assert CredentialFailure(status_code=403, reason="forbidden").is_quota_error is False
    assert AUTH_FAILURE.is_auth_error is True
    assert CredentialFailure(status_code=401).is_auth_error is True
    assert SERVER_FAILURE.is_auth_error is False
