"""API key authentication and signed session recovery."""

import pytest

from gigmarket.auth.security import resolve_caller, sign_session, verify_session
from gigmarket.db import crud
from gigmarket.domain.errors import AuthenticationError
from gigmarket.domain.states import AccountType


class TestSessionTokens:
    """Signed session cookie values."""

    def test_round_trip(self):
        token = sign_session(42)

        assert token.startswith("42.")
        assert verify_session(token) == 42

    def test_tampered_user_id(self):
        _, signature = sign_session(42).split(".", 1)
        assert verify_session(f"43.{signature}") is None

    def test_wrong_secret(self):
        token = sign_session(42, secret="other-secret")
        assert verify_session(token) is None

    @pytest.mark.parametrize("token", [None, "", "42", "abc.def", "42.", ".deadbeef"])
    def test_malformed(self, token):
        assert verify_session(token) is None


class TestResolveCaller:
    """Resolving the caller from credentials."""

    @pytest.mark.asyncio
    async def test_api_key(self, db, poster):
        caller = await resolve_caller(db, poster.api_key)

        assert caller.user_id == poster.id
        assert caller.account_type == AccountType.POSTER
        assert caller.via_session is False

    @pytest.mark.asyncio
    async def test_unknown_api_key(self, db):
        with pytest.raises(AuthenticationError):
            await resolve_caller(db, "gm_not-a-real-key")

    @pytest.mark.asyncio
    async def test_inactive_user_rejected(self, db, worker):
        await crud.update_user(db, worker, is_active=False)

        with pytest.raises(AuthenticationError):
            await resolve_caller(db, worker.api_key)
        with pytest.raises(AuthenticationError):
            await resolve_caller(db, None, sign_session(worker.id))

    @pytest.mark.asyncio
    async def test_session_recovery(self, db, worker):
        caller = await resolve_caller(db, None, sign_session(worker.id))

        assert caller.user_id == worker.id
        assert caller.via_session is True

    @pytest.mark.asyncio
    async def test_api_key_wins_over_cookie(self, db, poster, worker):
        caller = await resolve_caller(db, poster.api_key, sign_session(worker.id))
        assert caller.user_id == poster.id

    @pytest.mark.asyncio
    async def test_session_for_deleted_user(self, db):
        with pytest.raises(AuthenticationError):
            await resolve_caller(db, None, sign_session(9999))

    @pytest.mark.asyncio
    async def test_no_credentials(self, db):
        with pytest.raises(AuthenticationError):
            await resolve_caller(db, None, None)
