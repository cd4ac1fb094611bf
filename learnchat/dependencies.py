import asyncio
from typing import Awaitable, TypeVar
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from learnchat.config import Settings
from learnchat.database import get_db
from learnchat.errors import RateLimited
from learnchat.services.broadcaster import Broadcaster
from learnchat.services.messaging import MessagingService
from learnchat.services.rate_limiter import RateLimiter

security = HTTPBearer(auto_error=False)

T = TypeVar("T")


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def decode_user_id(token: str, settings: Settings) -> UUID:
    """Return the verified user id carried in the token's `sub` claim.

    Raises JWTError or ValueError when the token is invalid.
    """
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    subject = payload.get("sub")
    if not subject:
        raise JWTError("Token has no subject")
    return UUID(str(subject))


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_app_settings),
) -> UUID:
    """Get the authenticated user id from the bearer token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    try:
        return decode_user_id(credentials.credentials, settings)
    except (JWTError, ValueError):
        raise credentials_exception


def get_messaging_service(db: AsyncSession = Depends(get_db)) -> MessagingService:
    return MessagingService(db)


def get_broadcaster(request: Request) -> Broadcaster:
    return request.app.state.broadcaster


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


async def enforce_send_rate_limit(
    user_id: UUID = Depends(get_current_user_id),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Per-user quota on message sends, checked before anything is persisted."""
    result = await limiter.hit(str(user_id))
    if not result.allowed:
        raise RateLimited(
            f"Too many messages sent, please slow down (limit {result.limit} per {limiter.window_seconds}s)",
            retry_after=result.retry_after,
        )


async def with_store_timeout(awaitable: Awaitable[T], settings: Settings) -> T:
    """Bound the persistence work of one request; a timeout surfaces as 503."""
    return await asyncio.wait_for(awaitable, timeout=settings.store_timeout_seconds)
