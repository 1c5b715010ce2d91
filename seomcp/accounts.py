"""Read-only lookups against the account tables (users, api_keys, google_tokens)."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select

from seomcp.db import get_sessionmaker
from seomcp.models import ApiKey, GoogleToken, User
from seomcp.services.worker_config import GoogleTokens
from seomcp.usage.tracker import Principal


def get_principal(database_url: str, owner_id: str, api_key_id: Optional[str] = None) -> Optional[Principal]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        user = s.get(User, str(owner_id))
        if user is None:
            return None
        return Principal(
            user_id=user.id,
            email=user.email,
            plan=user.plan,
            api_key_id=api_key_id,
            email_verified=bool(user.email_verified),
        )


def find_active_key(database_url: str, owner_id: str, api_key_id: Optional[str] = None) -> Optional[str]:
    """The given key if it is the owner's and active, else the owner's first active key."""
    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = select(ApiKey.id).where(ApiKey.user_id == str(owner_id)).where(ApiKey.is_active.is_(True))
        if api_key_id:
            q = q.where(ApiKey.id == str(api_key_id))
        else:
            q = q.order_by(ApiKey.created_at.asc())
        return s.execute(q.limit(1)).scalar_one_or_none()


def get_google_tokens(database_url: str, owner_id: str) -> Optional[GoogleTokens]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        row = s.get(GoogleToken, str(owner_id))
        if row is None or not row.refresh_token:
            return None
        return GoogleTokens(
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=row.expires_at,
        )
