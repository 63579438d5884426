"""
Visa CRM - Auth dependency
Resolves the session bearer token to the acting user, whose email is stamped
on conversion audit events. Login, logout and user management live in the
authentication service.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config import get_db, now_iso

logger = logging.getLogger("auth")

security = HTTPBearer(auto_error=False)


async def _session_user(db, token: str) -> Optional[dict]:
    """User owning a live session token, None if the token is unknown or expired"""
    session = await db.sessions.find_one(
        {"token": token, "expires_at": {"$gt": now_iso()}},
        {"_id": 0, "user_id": 1}
    )
    if not session:
        return None
    return await db.users.find_one(
        {"id": session.get("user_id")},
        {"_id": 0, "password": 0}
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db)
) -> dict:
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = await _session_user(db, credentials.credentials)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    if user.get("active") is False:
        logger.warning(f"[AUTH] Disabled account {user.get('email')} rejected")
        raise HTTPException(status_code=403, detail="Account disabled")

    return user
