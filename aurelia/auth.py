# aurelia/auth.py
from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from urllib.parse import urlsplit

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import Settings


pwd = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(p: str) -> str:
    return pwd.hash(p)


def verify_password(p: str, h: Optional[str]) -> bool:
    if not h:
        return False
    return pwd.verify(p, h)


def create_token(user_id: str, settings: Settings) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {"sub": str(user_id), "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(token: str, settings: Settings) -> Optional[str]:
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except JWTError:
        return None
    sub = data.get("sub")
    return str(sub) if sub else None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


# -------------------
# One-time sign-in links
# -------------------
def hash_link_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_link_token() -> Tuple[str, str]:
    """Return ``(raw_token, token_hash)``. Only the hash is persisted."""
    token = secrets.token_urlsafe(32)
    return token, hash_link_token(token)


# -------------------
# Post sign-in redirects
# -------------------
def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


def safe_redirect(target: Optional[str], settings: Settings) -> Optional[str]:
    """Return ``target`` if it points at the site (or an allow-listed origin), else None.

    Site-relative paths are resolved against ``site_url``.
    """
    target = (target or "").strip()
    if not target:
        return None

    if target.startswith("/"):
        if target.startswith(("//", "/\\")):
            return None
        return settings.site_url + target

    parts = urlsplit(target)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None

    allowed = {_origin(settings.site_url)} | {_origin(o) for o in settings.redirect_allow_list}
    return target if _origin(target) in allowed else None
