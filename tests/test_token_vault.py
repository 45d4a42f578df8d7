"""Tests for reset tokens and verification codes.

Tests for:
- Single-use issue/consume semantics
- Expiry pruning and retry on mismatch
- Password reset flow
- Email and phone verification flows
"""
import pytest

from bastion.service.errors import (
    ConflictError,
    ExpiredError,
    InvalidCodeError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from bastion.service.tokens import TokenPurpose

ALICE_EMAIL = "alice@example.com"
ALICE_PASSWORD = "Password123!"
RESET_MESSAGE = "If your email exists in our system, you will receive a password reset link"


class TestTokenVault:
    def test_consume_once(self, auth, alice):
        token = auth.tokens.issue(TokenPurpose.PHONE_VERIFICATION, alice.id)

        auth.tokens.consume(TokenPurpose.PHONE_VERIFICATION, alice.id, token.value)

        with pytest.raises(NotFoundError):
            auth.tokens.consume(TokenPurpose.PHONE_VERIFICATION, alice.id, token.value)

    def test_mismatch_leaves_record(self, auth, alice):
        token = auth.tokens.issue(TokenPurpose.PHONE_VERIFICATION, alice.id)

        with pytest.raises(InvalidCodeError):
            auth.tokens.consume(TokenPurpose.PHONE_VERIFICATION, alice.id, "nope")

        assert auth.tokens.peek(TokenPurpose.PHONE_VERIFICATION, alice.id) == token

    def test_expired_record_pruned(self, auth, alice, clock):
        token = auth.tokens.issue(TokenPurpose.PHONE_VERIFICATION, alice.id)
        clock.advance(minutes=11)

        with pytest.raises(ExpiredError):
            auth.tokens.consume(TokenPurpose.PHONE_VERIFICATION, alice.id, token.value)
        assert auth.tokens.peek(TokenPurpose.PHONE_VERIFICATION, alice.id) is None

    def test_reissue_overwrites(self, auth, alice):
        first = auth.tokens.issue(TokenPurpose.EMAIL_VERIFICATION, alice.id)
        second = auth.tokens.issue(TokenPurpose.EMAIL_VERIFICATION, alice.id)

        with pytest.raises(InvalidCodeError):
            auth.tokens.consume(TokenPurpose.EMAIL_VERIFICATION, alice.id, first.value)
        auth.tokens.consume(TokenPurpose.EMAIL_VERIFICATION, alice.id, second.value)

    def test_purposes_are_independent(self, auth, alice):
        email_code = auth.tokens.issue(TokenPurpose.EMAIL_VERIFICATION, alice.id)
        auth.tokens.issue(TokenPurpose.PHONE_VERIFICATION, alice.id)

        auth.tokens.consume(TokenPurpose.EMAIL_VERIFICATION, alice.id, email_code.value)
        assert auth.tokens.peek(TokenPurpose.PHONE_VERIFICATION, alice.id) is not None

    @pytest.mark.parametrize(
        "purpose,minutes",
        [
            (TokenPurpose.PASSWORD_RESET, 60),
            (TokenPurpose.EMAIL_VERIFICATION, 60 * 24),
            (TokenPurpose.PHONE_VERIFICATION, 10),
        ],
    )
    def test_default_lifetimes(self, auth, alice, clock, purpose, minutes):
        token = auth.tokens.issue(purpose, alice.id)
        assert (token.expires_at - clock.now()).total_seconds() == minutes * 60


class TestPasswordReset:
    def test_request_for_unknown_email_has_same_message(self, auth, alice):
        known = auth.request_password_reset(ALICE_EMAIL)
        unknown = auth.request_password_reset("nobody@example.com")

        assert known["message"] == unknown["message"] == RESET_MESSAGE
        assert "token" in known
        assert "token" not in unknown

    def test_reset_changes_password_and_ends_sessions(self, auth, alice):
        auth.login(ALICE_EMAIL, ALICE_PASSWORD)
        token = auth.request_password_reset(ALICE_EMAIL)["token"]

        auth.reset_password(token, "BrandNew789!")

        assert auth.sessions.list_active(alice.id) == []
        assert auth.login(ALICE_EMAIL, "BrandNew789!").token
        with pytest.raises(InvalidCredentialsError):
            auth.login(ALICE_EMAIL, ALICE_PASSWORD)

    def test_reset_token_single_use(self, auth, alice):
        token = auth.request_password_reset(ALICE_EMAIL)["token"]
        auth.reset_password(token, "BrandNew789!")

        with pytest.raises(NotFoundError):
            auth.reset_password(token, "Another789!")

    def test_reset_revalidates_policy_without_spending_token(self, auth, alice):
        token = auth.request_password_reset(ALICE_EMAIL)["token"]

        with pytest.raises(ValidationError):
            auth.reset_password(token, "short")

        auth.reset_password(token, "BrandNew789!")

    def test_expired_reset_token(self, auth, alice, clock):
        token = auth.request_password_reset(ALICE_EMAIL)["token"]
        clock.advance(minutes=61)

        with pytest.raises(ExpiredError):
            auth.reset_password(token, "BrandNew789!")

    def test_request_is_rate_limited(self, auth, alice):
        for _ in range(5):
            auth.request_password_reset(ALICE_EMAIL, ip_addr="10.9.9.9")

        with pytest.raises(RateLimitedError):
            auth.request_password_reset(ALICE_EMAIL, ip_addr="10.9.9.9")

    def test_invalid_email_rejected(self, auth):
        with pytest.raises(ValidationError):
            auth.request_password_reset("not-an-email")


class TestChangePassword:
    def test_wrong_current_password(self, auth, alice):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            auth.change_password(alice.id, "WrongPassword1!", "NewPassword456!")
        assert exc_info.value.message == "Current password is incorrect"

    def test_new_password_must_pass_policy(self, auth, alice):
        with pytest.raises(ValidationError):
            auth.change_password(alice.id, ALICE_PASSWORD, "short")

    def test_records_change_time(self, auth, alice, clock):
        auth.change_password(alice.id, ALICE_PASSWORD, "NewPassword456!")
        assert auth.store.get_identity(alice.id).password_changed_at == clock.now()


class TestEmailVerification:
    def test_verify_email_with_registration_code(self, auth):
        identity, code = auth.register("Dan", "Poe", "dan@example.com", ALICE_PASSWORD)

        verified = auth.verify_email(identity.id, code)

        assert verified.email_verified is True
        assert auth.login("dan@example.com", ALICE_PASSWORD).token

    def test_wrong_code_allows_retry(self, auth):
        identity, code = auth.register("Dan", "Poe", "dan@example.com", ALICE_PASSWORD)

        with pytest.raises(InvalidCodeError):
            auth.verify_email(identity.id, "000000" if code != "000000" else "111111")
        assert auth.verify_email(identity.id, code).email_verified is True

    def test_request_when_verified_fails(self, auth, alice):
        with pytest.raises(ValidationError):
            auth.request_email_verification(alice.id)

    def test_requested_code_replaces_old(self, auth):
        identity, old_code = auth.register("Dan", "Poe", "dan@example.com", ALICE_PASSWORD)
        new_code = auth.request_email_verification(identity.id)

        if new_code != old_code:
            with pytest.raises(InvalidCodeError):
                auth.verify_email(identity.id, old_code)
        assert auth.verify_email(identity.id, new_code).email_verified is True


class TestPhoneVerification:
    def test_add_and_verify_phone(self, auth, alice):
        code = auth.add_phone_number(alice.id, "+14155550123")

        identity = auth.verify_phone(alice.id, code)

        assert identity.phone_number == "+14155550123"
        assert identity.phone_verified is True

    @pytest.mark.parametrize("number", ["12345", "+0123456789", "phone", "+1415555012345678"])
    def test_invalid_format(self, auth, alice, number):
        with pytest.raises(ValidationError):
            auth.add_phone_number(alice.id, number)

    def test_number_unique_across_identities(self, auth, alice):
        other, _ = auth.register("Eve", "Moe", "eve@example.com", ALICE_PASSWORD)
        auth.add_phone_number(alice.id, "+14155550123")

        with pytest.raises(ConflictError):
            auth.add_phone_number(other.id, "+14155550123")

    def test_changing_number_resets_verification(self, auth, alice):
        code = auth.add_phone_number(alice.id, "+14155550123")
        auth.verify_phone(alice.id, code)

        auth.add_phone_number(alice.id, "+14155550999")

        identity = auth.store.get_identity(alice.id)
        assert identity.phone_verified is False
        assert auth.store.get_identity_by_phone("+14155550123") is None

    def test_request_without_number(self, auth, alice):
        with pytest.raises(ValidationError):
            auth.request_phone_verification(alice.id)

    def test_request_when_verified(self, auth, alice):
        auth.verify_phone(alice.id, auth.add_phone_number(alice.id, "+14155550123"))
        with pytest.raises(ValidationError):
            auth.request_phone_verification(alice.id)

    def test_phone_code_expires_after_ten_minutes(self, auth, alice, clock):
        code = auth.add_phone_number(alice.id, "+14155550123")
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(ExpiredError):
            auth.verify_phone(alice.id, code)
