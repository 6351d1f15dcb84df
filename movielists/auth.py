import os
from datetime import datetime, timedelta, timezone

from jose import jwt, JWTError
from fastapi import Request, HTTPException, Depends
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_db
from .errors import SessionExpired
from .models import AuthSession, as_utc, utc_now

JWT_SECRET = os.environ.get("JWT_SECRET", "change-me-in-production")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(hours=1)
TMDB_SESSION_TTL = timedelta(days=int(os.environ.get("TMDB_SESSION_TTL_DAYS", "30")))


def create_access_token(tmdb_user_id: int, ttl: timedelta = ACCESS_TOKEN_TTL) -> str:
    payload = {
        "sub": str(tmdb_user_id),
        "exp": datetime.now(timezone.utc) + ttl,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


async def store_session(
    db: AsyncSession,
    tmdb_user_id: int,
    tmdb_session_id: str,
    username: str | None = None,
    ttl: timedelta = TMDB_SESSION_TTL,
) -> AuthSession:
    """Persist a provider session handed over by the login flow."""
    now = utc_now()
    row = AuthSession(
        tmdb_user_id=tmdb_user_id,
        tmdb_session_id=tmdb_session_id,
        username=username,
        created_at=now,
        last_accessed_at=now,
        expires_at=now + ttl,
    )
    db.add(row)
    await db.commit()
    return row


async def invalidate_sessions(db: AsyncSession, tmdb_user_id: int) -> None:
    await db.execute(delete(AuthSession).where(AuthSession.tmdb_user_id == tmdb_user_id))
    await db.commit()


async def get_user_session(db: AsyncSession, tmdb_user_id: int) -> str:
    """Return the newest unexpired provider session id for an owner."""
    row = (
        await db.execute(
            select(AuthSession)
            .where(AuthSession.tmdb_user_id == tmdb_user_id)
            .order_by(AuthSession.expires_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if row is None or as_utc(row.expires_at) <= utc_now():
        raise SessionExpired("No valid session for user")
    return row.tmdb_session_id


async def get_current_owner(request: Request, db: AsyncSession = Depends(get_db)) -> int:
    token = request.cookies.get("access_token")
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(token)
    subject = payload.get("sub")
    if not subject or not str(subject).isdigit():
        raise HTTPException(status_code=401, detail="Invalid token")
    tmdb_user_id = int(subject)
    try:
        await get_user_session(db, tmdb_user_id)
    except SessionExpired:
        raise HTTPException(status_code=401, detail="TMDB session expired. Please re-authenticate.")
    return tmdb_user_id


def verify_csrf(request: Request):
    """Verify CSRF token on state-changing requests."""
    csrf_cookie = request.cookies.get("csrf_token")
    csrf_header = request.headers.get("x-csrf-token")
    if not csrf_cookie or not csrf_header or csrf_cookie != csrf_header:
        raise HTTPException(status_code=403, detail="CSRF token mismatch")
