# aurelia/identity/store.py
"""Identity primitives over the users / profiles / login_links tables.

The surface mirrors what a hosted auth admin API offers: paginated listing,
create, update-by-id and magic-link minting. There is no lookup by phone
or email; callers scan pages.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import urlencode

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth import hash_link_token, new_link_token
from ..config import Settings
from ..errors import InvalidToken
from ..models import LoginLink, Profile, User

logger = logging.getLogger(__name__)


class IdentityStoreError(RuntimeError):
    """Any identity store call that did not complete."""


class PhoneExistsError(IdentityStoreError):
    """Create refused because another identity already owns the phone."""


@dataclass(frozen=True)
class MagicLink:
    token_hash: str
    action_link: str


class IdentityStore:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    # -------------------
    # Users
    # -------------------
    def list_users(self, page: int, per_page: int) -> List[User]:
        try:
            return (
                self.db.query(User)
                .order_by(User.created_at, User.id)
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
        except SQLAlchemyError as exc:
            raise IdentityStoreError(str(exc)) from exc

    def create_user(
        self,
        *,
        email: str,
        phone: str,
        full_name: Optional[str] = None,
        email_confirm: bool = False,
        phone_confirm: bool = False,
    ) -> User:
        now = datetime.utcnow()
        user = User(
            email=email,
            phone=phone,
            full_name=full_name or None,
            email_confirmed_at=now if email_confirm else None,
            phone_confirmed_at=now if phone_confirm else None,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if self.db.query(User.id).filter(User.phone == phone).first():
                raise PhoneExistsError(f"Phone {phone} is already registered") from exc
            raise IdentityStoreError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise IdentityStoreError(str(exc)) from exc
        self.db.refresh(user)
        return user

    def update_user_by_id(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        email_confirm: bool = False,
        phone_confirm: bool = False,
    ) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise IdentityStoreError(f"User {user_id} not found")

        now = datetime.utcnow()
        if email is not None:
            user.email = email
            if email_confirm:
                user.email_confirmed_at = now
        if phone is not None:
            user.phone = phone
            if phone_confirm:
                user.phone_confirmed_at = now
        user.updated_at = now

        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise IdentityStoreError(str(exc)) from exc
        self.db.refresh(user)
        return user

    # -------------------
    # Profiles
    # -------------------
    def upsert_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str],
        phone: Optional[str],
        email: Optional[str],
    ) -> Profile:
        try:
            profile = self.db.query(Profile).filter(Profile.user_id == user_id).first()
            if profile is None:
                profile = Profile(user_id=user_id, loyalty_points=0, total_orders=0)
                self.db.add(profile)
            profile.full_name = full_name or None
            profile.phone = phone
            profile.email = email
            profile.updated_at = datetime.utcnow()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise IdentityStoreError(str(exc)) from exc
        return profile

    # -------------------
    # Magic links
    # -------------------
    def generate_link(self, email: str, redirect_to: Optional[str] = None) -> MagicLink:
        user = self.db.query(User).filter(func.lower(User.email) == email.lower()).first()
        if user is None:
            raise IdentityStoreError(f"No user registered with {email}")

        token, token_hash = new_link_token()
        link = LoginLink(
            token_hash=token_hash,
            user_id=user.id,
            email=user.email,
            redirect_to=redirect_to,
            expires_at=datetime.utcnow() + timedelta(minutes=self.settings.magic_link_expire_minutes),
        )
        self.db.add(link)
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise IdentityStoreError(str(exc)) from exc

        params = {"token": token, "type": "magiclink"}
        if redirect_to:
            params["redirect_to"] = redirect_to
        action_link = f"{self.settings.api_url}/auth/verify?{urlencode(params)}"
        return MagicLink(token_hash=token_hash, action_link=action_link)

    def redeem_link(self, *, token_hash: Optional[str] = None, token: Optional[str] = None) -> LoginLink:
        """Consume a one-time link. Raises ``InvalidToken`` when unknown, used or expired."""
        if token and not token_hash:
            token_hash = hash_link_token(token)
        if not token_hash:
            raise InvalidToken()

        link = self.db.query(LoginLink).filter(LoginLink.token_hash == token_hash).first()
        now = datetime.utcnow()
        if link is None or link.used_at is not None or link.expires_at <= now:
            raise InvalidToken()

        link.used_at = now
        user = self.db.get(User, link.user_id)
        if user is not None and user.email_confirmed_at is None:
            user.email_confirmed_at = now
        self.db.commit()
        return link
