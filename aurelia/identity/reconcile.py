# aurelia/identity/reconcile.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from ..auth import safe_redirect
from ..config import Settings
from ..errors import (
    IdentityConflictError,
    IdentityCreationError,
    InvalidRequest,
    TokenIssuanceError,
)
from ..models import User
from .phone import VerifiedPhone, normalize_phone, parse_widget_payload
from .store import IdentityStore, IdentityStoreError, PhoneExistsError
from .widget import fetch_verification

logger = logging.getLogger(__name__)


class PhoneIdentityReconciler:
    """Turn a verified phone number into exactly one user plus a one-time sign-in link.

    Safe to call repeatedly for the same phone: a second run finds the identity
    created by the first one.
    """

    def __init__(self, settings: Settings, store: IdentityStore, http: httpx.Client):
        self.settings = settings
        self.store = store
        self.http = http

    def find_existing_user(self, phone: VerifiedPhone) -> Optional[User]:
        email = phone.login_email(self.settings.app_email_domain).lower()
        per_page = self.settings.identity_page_size

        for page in range(1, self.settings.identity_max_pages + 1):
            try:
                users = self.store.list_users(page=page, per_page=per_page)
            except IdentityStoreError:
                logger.exception("Error listing users (page %s)", page)
                break

            for u in users:
                if (u.email or "").lower() == email or phone.matches(u.phone):
                    return u

            if len(users) < per_page:
                break

        return None

    def _adopt(self, user: User, phone: VerifiedPhone) -> str:
        """Bring an existing identity in line with the verified phone; return its login email."""
        generated = phone.login_email(self.settings.app_email_domain)

        if normalize_phone(user.phone) != phone.display:
            try:
                self.store.update_user_by_id(user.id, phone=phone.display, phone_confirm=True)
            except IdentityStoreError:
                logger.exception("Could not normalize phone for user %s", user.id)

        if not user.email:
            try:
                self.store.update_user_by_id(user.id, email=generated, email_confirm=True)
            except IdentityStoreError:
                logger.exception("Could not attach login email for user %s", user.id)
            return generated

        # the link must be minted for the email this identity already has
        return user.email

    def _create(self, phone: VerifiedPhone) -> Tuple[str, str, bool]:
        generated = phone.login_email(self.settings.app_email_domain)
        logger.info("Creating new user with phone %s", phone.display)

        try:
            user = self.store.create_user(
                email=generated,
                phone=phone.display,
                full_name=phone.full_name,
                email_confirm=True,
                phone_confirm=True,
            )
        except PhoneExistsError:
            logger.warning("Phone already exists; looking the user up again")
            existing = self.find_existing_user(phone)
            if existing is None:
                logger.error("Phone %s is registered but no matching user was found", phone.display)
                raise IdentityConflictError(
                    details="Phone is already registered. Please contact support."
                )
            logger.info("Recovered existing user %s", existing.id)
            return existing.id, existing.email or generated, False
        except IdentityStoreError as exc:
            logger.error("Error creating user: %s", exc)
            raise IdentityCreationError(details=str(exc)) from exc

        logger.info("New user created: %s", user.id)
        return user.id, generated, True

    def reconcile(self, user_json_url: str, redirect_to: Optional[str] = None) -> Dict[str, Any]:
        data = fetch_verification(self.http, user_json_url, self.settings.http_timeout_seconds)
        phone = parse_widget_payload(data)
        if not phone.raw:
            raise InvalidRequest("Verification data has no phone number")

        logger.info("Verified phone %s", phone.display)

        existing = self.find_existing_user(phone)
        if existing is not None:
            user_id, is_new_user = existing.id, False
            logger.info("Found existing user %s", user_id)
            login_email = self._adopt(existing, phone)
        else:
            user_id, login_email, is_new_user = self._create(phone)

        try:
            self.store.upsert_profile(
                user_id,
                full_name=phone.full_name,
                phone=phone.display,
                email=login_email,
            )
        except IdentityStoreError:
            logger.warning("Profile update failed for user %s", user_id, exc_info=True)

        redirect = safe_redirect(redirect_to, self.settings)
        if redirect_to and redirect is None:
            logger.warning("Ignoring redirect_to outside the site: %s", redirect_to)

        try:
            link = self.store.generate_link(login_email, redirect_to=redirect)
        except IdentityStoreError as exc:
            logger.error("Error generating magic link: %s", exc)
            raise TokenIssuanceError() from exc

        logger.info("Generated magic link for user %s (%s)", user_id, login_email)

        return {
            "success": True,
            "phone": phone.display,
            "user_id": user_id,
            "is_new_user": is_new_user,
            "first_name": phone.first_name,
            "last_name": phone.last_name,
            "token_hash": link.token_hash,
            "action_link": link.action_link,
            "email": login_email,
            "message": "Phone verified successfully",
        }
