"""Tests for the HS256 token codec."""

import json

import pytest

from authgate.service.errors import UnauthorizedError
from authgate.service.tokens import TokenCodec, extract_bearer


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    data = json.loads(TokenCodec._decode_segment(payload))
    data.update(changes)
    new_payload = TokenCodec._encode_segment(json.dumps(data).encode())
    return f"{header}.{new_payload}.{sig}"


class TestBearerExtraction:
    def test_extracts_token(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("bearer abc") == "abc"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   "])
    def test_rejects_other_headers(self, header):
        assert extract_bearer(header) is None


class TestAccessTokens:
    """Access token signing and verification."""

    def test_round_trip_claims(self, codec, clock):
        token = codec.sign_access("user-1", ["user", "admin"])

        payload = codec.verify_access(token)

        assert payload["sub"] == "user-1"
        assert payload["roles"] == ["user", "admin"]
        assert payload["typ"] == "access"
        assert payload["exp"] - payload["iat"] == 600
        assert payload["iat"] == int(clock.now)

    def test_expired_token_rejected(self, codec, clock, settings):
        token = codec.sign_access("user-1", ["user"])
        clock.advance(settings.access_token_ttl_seconds + settings.jwt_clock_tolerance_seconds + 1)

        with pytest.raises(UnauthorizedError) as exc_info:
            codec.verify_access(token)
        assert exc_info.value.message == "Invalid or expired access token."

    def test_clock_tolerance_allows_small_skew(self, codec, clock, settings):
        token = codec.sign_access("user-1", ["user"])
        clock.advance(settings.access_token_ttl_seconds + 1)

        assert codec.verify_access(token)["sub"] == "user-1"

    def test_tampered_payload_rejected(self, codec):
        token = _tamper_payload(codec.sign_access("user-1", ["user"]), roles=["admin"])

        with pytest.raises(UnauthorizedError):
            codec.verify_access(token)

    def test_refresh_token_is_not_an_access_token(self, codec):
        token = codec.sign_refresh("user-1", "sid-1", "jti-1")

        with pytest.raises(UnauthorizedError):
            codec.verify_access(token)

    def test_alg_none_rejected(self, codec):
        token = codec.sign_access("user-1", ["user"])
        _, payload, _ = token.split(".")
        header = TokenCodec._encode_segment(b'{"alg":"none","typ":"JWT"}')

        with pytest.raises(UnauthorizedError):
            codec.verify_access(f"{header}.{payload}.")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_garbage_rejected(self, codec, token):
        with pytest.raises(UnauthorizedError):
            codec.verify_access(token)

    def test_issuer_and_audience_enforced(self, make_settings, kv, clock):
        strict = TokenCodec(
            make_settings(jwt_issuer="authgate", jwt_audience="web"), kv, clock=clock
        )
        loose = TokenCodec(make_settings(), kv, clock=clock)

        token = strict.sign_access("user-1", ["user"])
        assert strict.verify_access(token)["aud"] == "web"

        # Same secret, but no iss/aud claims
        with pytest.raises(UnauthorizedError):
            strict.verify_access(loose.sign_access("user-1", ["user"]))


class TestRefreshTokens:
    """Refresh token verification and blacklist."""

    async def test_verify_refresh_claims(self, codec):
        token = codec.sign_refresh("user-1", "sid-1", "jti-1")

        payload = await codec.verify_refresh(token)

        assert (payload["sub"], payload["sid"], payload["jti"]) == ("user-1", "sid-1", "jti-1")
        assert payload["typ"] == "refresh"

    async def test_blacklisted_jti_rejected(self, codec):
        token = codec.sign_refresh("user-1", "sid-1", "jti-1")
        await codec.blacklist_refresh_jti("jti-1")

        with pytest.raises(UnauthorizedError) as exc_info:
            await codec.verify_refresh(token)
        assert exc_info.value.message == "Refresh token has been revoked."

        payload = await codec.verify_refresh(token, skip_blacklist=True)
        assert payload["jti"] == "jti-1"

    async def test_blacklist_expires(self, codec, clock):
        await codec.blacklist_refresh_jti("jti-1", ttl=30)
        assert await codec.is_refresh_blacklisted("jti-1")

        clock.advance(31)

        assert not await codec.is_refresh_blacklisted("jti-1")

    async def test_expired_refresh_verifies_when_ignoring_expiration(self, codec, clock, settings):
        token = codec.sign_refresh("user-1", "sid-1", "jti-1")
        clock.advance(settings.refresh_token_ttl_seconds + 60)

        with pytest.raises(UnauthorizedError):
            await codec.verify_refresh(token)
        payload = await codec.verify_refresh(token, ignore_expiration=True)
        assert payload["sub"] == "user-1"

    async def test_access_secret_cannot_sign_refresh(self, codec, settings):
        # A refresh-shaped payload signed with the access secret
        forged = codec._encode(
            {"sub": "user-1", "sid": "s", "jti": "j", "typ": "refresh", "exp": 4_000_000_000},
            settings.access_secret,
        )

        with pytest.raises(UnauthorizedError):
            await codec.verify_refresh(forged)

    async def test_peek_refresh(self, codec):
        token = codec.sign_refresh("user-1", "sid-1", "jti-1")
        await codec.blacklist_refresh_jti("jti-1")

        assert (await codec.peek_refresh(token))["sid"] == "sid-1"
        assert await codec.peek_refresh(token, allow_blacklisted=False) is None
        assert await codec.peek_refresh("not-a-token") is None
        assert await codec.peek_refresh(_tamper_payload(token, sub="user-2")) is None


class TestTicketsAndOneTimeFlags:
    def test_ticket_claims(self, codec, settings):
        ticket = codec.sign_ticket({"purpose": "signup"}, "jti-1", "user@example.com")

        payload = codec.verify_ticket(ticket)

        assert payload["purpose"] == "signup"
        assert payload["sub"] == "user@example.com"
        assert payload["iss"] == settings.ticket_issuer
        assert payload["aud"] == settings.ticket_audience

    def test_ticket_expires(self, codec, clock, settings):
        ticket = codec.sign_ticket({}, "jti-1", "user@example.com")
        clock.advance(settings.ticket_ttl_seconds + settings.jwt_clock_tolerance_seconds + 1)

        with pytest.raises(UnauthorizedError) as exc_info:
            codec.verify_ticket(ticket)
        assert exc_info.value.message == "Invalid or expired ticket."

    def test_access_token_is_not_a_ticket(self, codec):
        with pytest.raises(UnauthorizedError):
            codec.verify_ticket(codec.sign_access("user-1", ["user"]))
