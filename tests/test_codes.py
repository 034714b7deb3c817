"""Unit tests for auth/codes.py -- one-time code issuing and verification.

Covers:
- issue_code(): validation, lazy user creation, TTL, dev-mode echo, cooldown
- verify_code(): expiry boundary, single use, generic failures
- concurrent verification of one code has exactly one winner
- mail failures surface as InternalError without locking out the user
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from auth.codes import CodeService, generate_code
from auth.mailer import MockMailDispatcher
from auth.store import UserStore
from core.errors import InternalError, RateLimitError, ValidationError

EMAIL = "u@example.com"


class _FailingMailer:
    def send(self, mail) -> None:
        raise OSError("connection refused")


def test_generate_code_is_six_digits() -> None:
    for _ in range(200):
        code = generate_code()
        assert len(code) == 6
        assert 100000 <= int(code) <= 999999


class TestIssueCode:
    def test_returns_ttl_and_echoes_in_dev(self, code_service: CodeService, mailer: MockMailDispatcher) -> None:
        issued = code_service.issue_code(EMAIL)
        assert issued.expires_in == 600
        assert issued.code is not None and len(issued.code) == 6
        assert len(mailer.outbox) == 1
        assert mailer.outbox[0].to == EMAIL
        assert issued.code in mailer.outbox[0].text

    def test_no_echo_in_production(self, store: UserStore, mailer: MockMailDispatcher, clock) -> None:
        service = CodeService(store, mailer, echo_codes=False, clock=clock)
        issued = service.issue_code(EMAIL)
        assert issued.code is None
        assert issued.expires_in == 600

    def test_code_is_stored_hashed(self, code_service: CodeService, store: UserStore, clock) -> None:
        issued = code_service.issue_code(EMAIL)
        record = store.get_latest_valid_code(EMAIL, "login", clock())
        assert record.code_hash != issued.code
        assert issued.code not in record.code_hash

    @pytest.mark.parametrize("bad", ["", "not-an-email", "a@", "@example.com", "a b@example.com"])
    def test_rejects_malformed_email(self, code_service: CodeService, bad: str) -> None:
        with pytest.raises(ValidationError):
            code_service.issue_code(bad)

    def test_rejects_unsupported_purpose(self, code_service: CodeService, store: UserStore) -> None:
        with pytest.raises(ValidationError):
            code_service.issue_code(EMAIL, purpose="reset")
        assert store.count_codes(EMAIL, "reset") == 0

    def test_creates_user_for_unseen_email(self, code_service: CodeService, store: UserStore) -> None:
        code_service.issue_code("New@Example.com")
        user = store.get_by_email("new@example.com")
        assert user is not None
        assert user.username == "new@example.com"
        assert user.roles == {"user"}
        # The placeholder password is unusable.
        assert not store.verify_password(user, "")

    def test_reuses_existing_user(self, code_service: CodeService, store: UserStore) -> None:
        existing = store.register("alice", "p@ss1234", email=EMAIL)
        code_service.issue_code(EMAIL)
        assert store.count_users() == 1
        assert store.get_by_email(EMAIL).id == existing.id

    def test_username_collision_gets_suffix(self, code_service: CodeService, store: UserStore) -> None:
        store.register(EMAIL, "p@ss1234")  # username equals the address, no email
        code_service.issue_code(EMAIL)
        user = store.get_by_email(EMAIL)
        assert user.username != EMAIL
        assert user.username.startswith(EMAIL + "#")

    def test_resend_within_cooldown_is_rate_limited(self, code_service: CodeService, store: UserStore, clock) -> None:
        code_service.issue_code(EMAIL)
        clock.advance(seconds=59)
        with pytest.raises(RateLimitError) as exc_info:
            code_service.issue_code(EMAIL)
        assert exc_info.value.retry_after == 1
        assert store.count_codes(EMAIL, "login") == 1

    def test_resend_after_cooldown_replaces_code(self, code_service: CodeService, clock) -> None:
        first = code_service.issue_code(EMAIL)
        clock.advance(seconds=60)
        second = code_service.issue_code(EMAIL)
        # Only the newest valid code counts.
        if first.code != second.code:
            with pytest.raises(ValidationError):
                code_service.verify_code(EMAIL, "login", first.code)
        assert code_service.verify_code(EMAIL, "login", second.code).email == EMAIL

    def test_cooldown_ignores_used_codes(self, code_service: CodeService, clock) -> None:
        issued = code_service.issue_code(EMAIL)
        code_service.verify_code(EMAIL, "login", issued.code)
        clock.advance(seconds=5)
        assert code_service.issue_code(EMAIL).expires_in == 600

    def test_mail_failure_raises_and_releases_cooldown(self, store: UserStore, clock) -> None:
        service = CodeService(store, _FailingMailer(), echo_codes=True, clock=clock)
        with pytest.raises(InternalError):
            service.issue_code(EMAIL)
        assert store.get_latest_valid_code(EMAIL, "login", clock()) is None

        working = CodeService(store, MockMailDispatcher(), echo_codes=True, clock=clock)
        assert working.issue_code(EMAIL).code is not None


class TestVerifyCode:
    def test_valid_code_returns_user(self, code_service: CodeService) -> None:
        issued = code_service.issue_code(EMAIL)
        user = code_service.verify_code(EMAIL, "login", issued.code)
        assert user.email == EMAIL

    def test_email_is_matched_case_insensitively(self, code_service: CodeService) -> None:
        issued = code_service.issue_code(EMAIL)
        assert code_service.verify_code("U@EXAMPLE.com", "login", issued.code).email == EMAIL

    def test_valid_just_before_expiry(self, code_service: CodeService, clock) -> None:
        issued = code_service.issue_code(EMAIL)
        clock.advance(minutes=9, seconds=59)
        assert code_service.verify_code(EMAIL, "login", issued.code).email == EMAIL

    def test_invalid_just_after_expiry(self, code_service: CodeService, clock) -> None:
        issued = code_service.issue_code(EMAIL)
        clock.advance(minutes=10, seconds=1)
        with pytest.raises(ValidationError, match="Invalid or expired code."):
            code_service.verify_code(EMAIL, "login", issued.code)

    def test_code_works_once(self, code_service: CodeService) -> None:
        issued = code_service.issue_code(EMAIL)
        code_service.verify_code(EMAIL, "login", issued.code)
        with pytest.raises(ValidationError, match="Invalid or expired code."):
            code_service.verify_code(EMAIL, "login", issued.code)

    def test_wrong_and_missing_codes_fail_identically(self, code_service: CodeService) -> None:
        issued = code_service.issue_code(EMAIL)
        wrong = "100000" if issued.code != "100000" else "100001"
        with pytest.raises(ValidationError) as wrong_exc:
            code_service.verify_code(EMAIL, "login", wrong)
        with pytest.raises(ValidationError) as missing_exc:
            code_service.verify_code("nobody@example.com", "login", wrong)
        assert wrong_exc.value.message == missing_exc.value.message

    def test_wrong_code_does_not_consume(self, code_service: CodeService) -> None:
        issued = code_service.issue_code(EMAIL)
        wrong = "100000" if issued.code != "100000" else "100001"
        with pytest.raises(ValidationError):
            code_service.verify_code(EMAIL, "login", wrong)
        assert code_service.verify_code(EMAIL, "login", issued.code).email == EMAIL

    @pytest.mark.parametrize("bad", ["", "12345", "1234567", "abcdef"])
    def test_malformed_code_rejected(self, code_service: CodeService, bad: str) -> None:
        code_service.issue_code(EMAIL)
        with pytest.raises(ValidationError):
            code_service.verify_code(EMAIL, "login", bad)

    def test_lost_consume_race_fails(self, code_service: CodeService, store: UserStore, monkeypatch) -> None:
        """Another request flipped the code between our read and our update."""
        issued = code_service.issue_code(EMAIL)
        monkeypatch.setattr(store, "consume_code", lambda code_id: False)
        with pytest.raises(ValidationError, match="Invalid or expired code."):
            code_service.verify_code(EMAIL, "login", issued.code)


def test_concurrent_verification_has_one_winner(tmp_path) -> None:
    """Two threads submit the same correct code at once: one success, one failure."""
    store = UserStore(f"sqlite:///{tmp_path / 'race.db'}")
    try:
        service = CodeService(store, MockMailDispatcher(), echo_codes=True)
        code = service.issue_code(EMAIL).code
        barrier = threading.Barrier(2)

        def attempt() -> str:
            barrier.wait()
            try:
                service.verify_code(EMAIL, "login", code)
            except ValidationError:
                return "failed"
            return "ok"

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = sorted(pool.map(lambda _: attempt(), range(2)))
        assert results == ["failed", "ok"]
    finally:
        store.close()
