import hmac
import hashlib
import logging
from typing import Annotated, Optional

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.deps import DbSession
from gigmarket.db import crud
from gigmarket.domain.errors import AuthenticationError
from gigmarket.domain.models import CallerIdentity
from gigmarket.settings import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


def _session_digest(user_id: int, secret: str) -> str:
    return hmac.new(secret.encode(), str(user_id).encode(), hashlib.sha256).hexdigest()


def sign_session(user_id: int, secret: Optional[str] = None) -> str:
    """Session recovery token: '<user_id>.<hex hmac-sha256 of user_id>'."""
    return f"{user_id}.{_session_digest(user_id, secret or settings.SESSION_SECRET)}"


def verify_session(token: Optional[str], secret: Optional[str] = None) -> Optional[int]:
    """Returns the user id a valid token was issued for, else None."""
    if not token or "." not in token:
        return None
    raw_id, signature = token.split(".", 1)
    if not raw_id.isdigit():
        return None
    expected = _session_digest(int(raw_id), secret or settings.SESSION_SECRET)
    if not hmac.compare_digest(expected, signature):
        return None
    return int(raw_id)


async def resolve_caller(
    session: AsyncSession,
    api_key: Optional[str],
    session_token: Optional[str] = None,
) -> CallerIdentity:
    """
    The API key is the primary credential. Without one, the signed session
    cookie can restore the identity, provided that user still exists and is
    active.
    """
    if api_key:
        user = await crud.get_user_by_api_key(session, api_key)
        if not user or not user.is_active:
            raise AuthenticationError("Invalid API key")
        return CallerIdentity(user_id=user.id, account_type=user.account_type)

    user_id = verify_session(session_token)
    if user_id is not None:
        user = await crud.get_user(session, user_id)
        if user and user.is_active:
            logger.info(f"Recovered session for user {user.id}")
            return CallerIdentity(user_id=user.id, account_type=user.account_type, via_session=True)
    if session_token:
        logger.warning("Session recovery failed: invalid or stale session cookie")

    raise AuthenticationError("Authentication required")


async def get_caller(
    request: Request,
    session: DbSession,
    api_key: str = Security(API_KEY_HEADER),
) -> CallerIdentity:
    caller = await resolve_caller(session, api_key, request.cookies.get(settings.SESSION_COOKIE_NAME))
    request.state.caller = caller
    return caller


CurrentCaller = Annotated[CallerIdentity, Depends(get_caller)]
