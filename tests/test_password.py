"""Tests for password login and ticket-gated password setup."""

import pytest

from authgate.service.errors import (
    BadRequestError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    UnauthorizedError,
)
from authgate.service.otp import OtpChannel, OtpPurpose
from authgate.service.password import normalize_login_identifier

PASSWORD = "correct horse battery"


async def _ticket(otp_service, senders, sent_code, channel, identifier, purpose):
    await otp_service.request_code(channel, identifier, purpose)
    code = sent_code(senders[channel])
    return (await otp_service.verify_code(channel, identifier, code, purpose)).ticket


class TestPasswordHashing:
    def test_hash_is_argon2id(self, password_service):
        pwd_hash, algo = password_service._hash_password(PASSWORD)

        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    def test_same_password_produces_different_hashes(self, password_service):
        first, _ = password_service._hash_password(PASSWORD)
        second, _ = password_service._hash_password(PASSWORD)

        assert first != second

    def test_unknown_algorithm_never_verifies(self, password_service, user_store):
        user = user_store.create_user("user@example.com")
        user_store.save_password(user.id, "plaintext", "plain")

        assert password_service.verify_password(user.id, "plaintext") is False


class TestLogin:
    """Password login."""

    @pytest.fixture
    def member(self, user_store, password_service):
        user = user_store.create_user("user@example.com", email="user@example.com")
        password_service.store_password(user.id, PASSWORD)
        return user

    def test_login_succeeds(self, password_service, member):
        result = password_service.login("  User@Example.com ", PASSWORD)

        assert result.user_id == member.id

    def test_wrong_password(self, password_service, member):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            password_service.login("user@example.com", "wrong password")

        assert exc_info.value.error_code == "InvalidCredentials"
        assert exc_info.value.status_code == 401

    def test_unknown_user_same_error(self, password_service, member):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            password_service.login("nobody@example.com", PASSWORD)

        assert exc_info.value.message == "Invalid credentials."

    def test_inactive_user(self, password_service, user_store, member):
        user_store.set_user_active(member.id, False)

        with pytest.raises(InvalidCredentialsError):
            password_service.login("user@example.com", PASSWORD)

    def test_user_without_password(self, password_service, user_store):
        user_store.create_user("+15550001111", phone="+15550001111")

        with pytest.raises(InvalidCredentialsError):
            password_service.login("+1 555 000 1111", PASSWORD)

    def test_identifier_normalization(self):
        assert normalize_login_identifier(" +1 555 000 1111 ") == "+15550001111"
        assert normalize_login_identifier("User@Example.com") == "user@example.com"
        assert normalize_login_identifier(None) == ""


class TestSetPasswordWithTicket:
    async def test_signup_creates_user(
        self, password_service, otp_service, senders, sent_code, user_store
    ):
        ticket = await _ticket(
            otp_service, senders, sent_code, OtpChannel.SMS, "+15550001111", OtpPurpose.SIGNUP
        )

        user_id = await password_service.set_password_with_ticket(ticket, PASSWORD)

        user = user_store.get_user(user_id)
        assert user.identifier == "+15550001111"
        assert user.phone == "+15550001111"
        assert user.email is None
        assert password_service.login("+15550001111", PASSWORD).user_id == user_id

    async def test_ticket_single_use(self, password_service, otp_service, senders, sent_code):
        ticket = await _ticket(
            otp_service, senders, sent_code, OtpChannel.EMAIL, "a@example.com", OtpPurpose.SIGNUP
        )
        await password_service.set_password_with_ticket(ticket, PASSWORD)

        with pytest.raises(UnauthorizedError):
            await password_service.set_password_with_ticket(ticket, PASSWORD)

    async def test_short_password_keeps_ticket(
        self, password_service, otp_service, senders, sent_code
    ):
        ticket = await _ticket(
            otp_service, senders, sent_code, OtpChannel.EMAIL, "a@example.com", OtpPurpose.SIGNUP
        )

        with pytest.raises(BadRequestError):
            await password_service.set_password_with_ticket(ticket, "short")

        # The ticket was not consumed by the rejected attempt
        assert await password_service.set_password_with_ticket(ticket, PASSWORD)

    async def test_signup_for_existing_identifier_conflicts(
        self, password_service, otp_service, senders, sent_code, user_store
    ):
        user_store.create_user("a@example.com", email="a@example.com")
        ticket = await _ticket(
            otp_service, senders, sent_code, OtpChannel.EMAIL, "a@example.com", OtpPurpose.SIGNUP
        )

        with pytest.raises(ConflictError):
            await password_service.set_password_with_ticket(ticket, PASSWORD)

    async def test_reset_for_unknown_user(self, password_service, otp_service, senders, sent_code):
        ticket = await _ticket(
            otp_service, senders, sent_code, OtpChannel.EMAIL, "ghost@example.com", OtpPurpose.RESET
        )

        with pytest.raises(NotFoundError):
            await password_service.set_password_with_ticket(ticket, PASSWORD)

    async def test_reset_replaces_password_and_revokes_sessions(
        self,
        password_service,
        otp_service,
        refresh_service,
        sessions,
        senders,
        sent_code,
        user_store,
    ):
        user = user_store.create_user("a@example.com", email="a@example.com")
        password_service.store_password(user.id, "old password 123")
        session = await sessions.create(user.id)
        pair = await refresh_service.issue_tokens_for_user_id(user.id, session.id)

        ticket = await _ticket(
            otp_service, senders, sent_code, OtpChannel.EMAIL, "a@example.com", OtpPurpose.RESET
        )
        await password_service.set_password_with_ticket(ticket, PASSWORD)

        assert password_service.login("a@example.com", PASSWORD).user_id == user.id
        with pytest.raises(InvalidCredentialsError):
            password_service.login("a@example.com", "old password 123")
        assert await sessions.list(user.id) == []
        with pytest.raises(UnauthorizedError):
            await refresh_service.refresh(pair.refresh_token)
