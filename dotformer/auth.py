# dotformer/auth.py
import secrets
from typing import Optional
from fastapi import HTTPException, Header, Depends
from sqlalchemy.orm import Session
from dotformer.config import settings
from dotformer.crypto import KEY_PREFIX, hash_api_key
from dotformer.database import get_db
from dotformer.models import ApiKey, utcnow


async def get_current_api_key(
    authorization: str = Header(...),
    db: Session = Depends(get_db)
) -> ApiKey:
    """Validate API key from Authorization header."""
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    key = authorization[7:]  # Remove "Bearer "

    if not key.startswith(KEY_PREFIX):
        raise HTTPException(status_code=401, detail="Invalid API key format")

    api_key = db.query(ApiKey).filter(
        ApiKey.key_hash == hash_api_key(key),
        ApiKey.revoked_at.is_(None)
    ).first()

    if not api_key:
        raise HTTPException(status_code=401, detail="Invalid or revoked API key")

    # Update last_used_at
    api_key.last_used_at = utcnow()
    db.commit()

    return api_key


async def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Guard operator routes with the shared admin token."""
    if not settings.admin_token or not x_admin_token:
        raise HTTPException(status_code=401, detail="Admin token required")
    if not secrets.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=403, detail="Invalid admin token")
