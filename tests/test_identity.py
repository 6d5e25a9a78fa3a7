from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from aurelia.errors import IdentityConflictError, TokenIssuanceError, VerificationFetchError
from aurelia.identity.phone import normalize_phone, parse_widget_payload, strip_plus
from aurelia.identity.reconcile import PhoneIdentityReconciler
from aurelia.identity.store import IdentityStore, IdentityStoreError, PhoneExistsError
from aurelia.models import LoginLink, Profile, User

WIDGET_URL = "https://widget.test/u/abc123.json"


def _verify(client, **extra):
    return client.post("/functions/verify-phone", json={"user_json_url": WIDGET_URL, **extra})


# -------------------
# Phone helpers
# -------------------
def test_widget_payload_normalizes_to_display_phone():
    phone = parse_widget_payload({"user_country_code": "1", "user_phone_number": "5551234567"})
    assert phone.raw == "15551234567"
    assert phone.display == "+15551234567"
    assert phone.login_email("aurelia.app") == "phone_15551234567@aurelia.app"


def test_widget_payload_strips_plus_and_spaces():
    phone = parse_widget_payload({
        "user_country_code": " +91 ",
        "user_phone_number": "98765 43210",
        "user_first_name": " Ravi ",
        "user_last_name": "",
    })
    assert phone.display == "+919876543210"
    assert phone.full_name == "Ravi"


def test_phone_matching_tolerates_missing_plus():
    phone = parse_widget_payload({"user_country_code": "1", "user_phone_number": "5551234567"})
    assert phone.matches("15551234567")
    assert phone.matches("+15551234567")
    assert not phone.matches("+15551234568")
    assert not phone.matches(None)
    assert normalize_phone("15551234567") == "+15551234567"
    assert normalize_phone("") == ""
    assert strip_plus("+44") == "44"


# -------------------
# Endpoint
# -------------------
def test_new_phone_creates_identity_and_profile(client, db):
    resp = _verify(client, redirect_to="http://site.test/menu")
    assert resp.status_code == 200
    body = resp.json()

    assert body["success"] is True
    assert body["phone"] == "+15551234567"
    assert body["is_new_user"] is True
    assert body["email"] == "phone_15551234567@aurelia.app"
    assert body["first_name"] == "Ada"
    assert body["last_name"] == "Lovelace"
    assert body["message"] == "Phone verified successfully"
    assert body["token_hash"]
    assert body["action_link"].startswith("http://api.test/auth/verify?")

    user = db.get(User, body["user_id"])
    assert user.phone == "+15551234567"
    assert user.phone_confirmed_at is not None
    assert user.email_confirmed_at is not None
    assert user.full_name == "Ada Lovelace"

    profile = db.query(Profile).filter(Profile.user_id == user.id).one()
    assert profile.full_name == "Ada Lovelace"
    assert profile.phone == "+15551234567"
    assert profile.email == body["email"]

    link = db.query(LoginLink).filter(LoginLink.token_hash == body["token_hash"]).one()
    assert link.redirect_to == "http://site.test/menu"


def test_second_verification_reuses_identity(client, db):
    first = _verify(client).json()
    second = _verify(client).json()

    assert second["user_id"] == first["user_id"]
    assert second["is_new_user"] is False
    assert second["token_hash"] != first["token_hash"]
    assert db.query(User).count() == 1
    assert db.query(Profile).count() == 1


def test_existing_phone_without_plus_is_recognized(client, db, make_user):
    existing = make_user(email="ada@example.com", phone="15551234567")

    body = _verify(client).json()

    assert body["user_id"] == existing.id
    assert body["is_new_user"] is False
    assert body["phone"] == "+15551234567"
    assert db.query(User).count() == 1


def test_link_is_minted_for_existing_real_email(client, db, make_user):
    existing = make_user(email="ada@example.com", phone="+15551234567")

    body = _verify(client).json()

    assert body["email"] == "ada@example.com"
    link = db.query(LoginLink).filter(LoginLink.token_hash == body["token_hash"]).one()
    assert link.user_id == existing.id
    assert link.email == "ada@example.com"


def test_existing_identity_without_email_gets_synthetic_email(client, db, make_user):
    existing = make_user(phone="+15551234567")

    body = _verify(client).json()

    assert body["user_id"] == existing.id
    assert body["email"] == "phone_15551234567@aurelia.app"
    db.expire_all()
    assert db.get(User, existing.id).email == "phone_15551234567@aurelia.app"


def test_match_by_synthetic_email_case_insensitive(client, db, make_user):
    existing = make_user(email="PHONE_15551234567@Aurelia.App")

    body = _verify(client).json()

    assert body["user_id"] == existing.id
    assert body["email"] == "PHONE_15551234567@Aurelia.App"
    db.expire_all()
    assert db.get(User, existing.id).phone == "+15551234567"


def test_scan_walks_past_first_page(client, db, make_user):
    # page size is 2 in the test settings
    for n in range(5):
        make_user(email=f"someone{n}@example.com", phone=f"+4420000000{n}")
    target = make_user(email="late@example.com", phone="+15551234567")

    body = _verify(client).json()

    assert body["user_id"] == target.id
    assert db.query(User).count() == 6


def test_missing_url_is_rejected(client):
    resp = client.post("/functions/verify-phone", json={})
    assert resp.status_code == 400
    assert resp.json() == {"error": "user_json_url is required"}


def test_unreachable_verification_document(client, upstream):
    upstream.widget = None
    resp = _verify(client)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Failed to verify phone number"


def test_verification_document_without_phone(client, upstream):
    upstream.widget = {"user_first_name": "Nobody"}
    resp = _verify(client)
    assert resp.status_code == 400


def test_verification_timeout_is_a_fetch_error(client, upstream):
    upstream.widget_error = httpx.ConnectTimeout("timed out")
    resp = _verify(client)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Failed to verify phone number"


# -------------------
# Reconciler with a scripted store
# -------------------
class ScriptedStore(IdentityStore):
    """Wraps the real store; individual calls can be made to fail."""

    def __init__(self, db, settings, hidden=False, create_error=None, profile_error=False, link_error=False):
        super().__init__(db, settings)
        self.hidden = hidden
        self.create_error = create_error
        self.profile_error = profile_error
        self.link_error = link_error
        self.list_calls = 0

    def list_users(self, page, per_page):
        self.list_calls += 1
        if self.hidden is True:
            return []
        if self.hidden == "first-scan" and self.list_calls == 1:
            return []
        return super().list_users(page, per_page)

    def create_user(self, **kw):
        if self.create_error:
            raise self.create_error
        return super().create_user(**kw)

    def upsert_profile(self, user_id, **kw):
        if self.profile_error:
            raise IdentityStoreError("profiles table unavailable")
        return super().upsert_profile(user_id, **kw)

    def generate_link(self, email, redirect_to=None):
        if self.link_error:
            raise IdentityStoreError("link service down")
        return super().generate_link(email, redirect_to)


def test_phone_exists_race_recovers_on_rescan(db, settings, http_client, make_user):
    existing = make_user(email="ada@example.com", phone="+15551234567")
    store = ScriptedStore(db, settings, hidden="first-scan", create_error=PhoneExistsError("phone_exists"))

    result = PhoneIdentityReconciler(settings, store, http_client).reconcile(WIDGET_URL)

    assert result["user_id"] == existing.id
    assert result["is_new_user"] is False
    assert result["email"] == "ada@example.com"


def test_phone_exists_without_match_is_a_conflict(db, settings, http_client):
    store = ScriptedStore(db, settings, hidden=True, create_error=PhoneExistsError("phone_exists"))

    with pytest.raises(IdentityConflictError) as info:
        PhoneIdentityReconciler(settings, store, http_client).reconcile(WIDGET_URL)

    assert info.value.status_code == 409
    assert "contact support" in info.value.details


def test_real_duplicate_phone_in_store_raises_phone_exists(db, settings, make_user):
    make_user(email="ada@example.com", phone="+15551234567")
    store = IdentityStore(db, settings)

    with pytest.raises(PhoneExistsError):
        store.create_user(email="other@example.com", phone="+15551234567")


def test_profile_failure_does_not_abort(db, settings, http_client):
    store = ScriptedStore(db, settings, profile_error=True)

    result = PhoneIdentityReconciler(settings, store, http_client).reconcile(WIDGET_URL)

    assert result["success"] is True
    assert db.query(Profile).count() == 0


def test_link_failure_is_token_issuance_error_and_retry_is_safe(db, settings, http_client):
    failing = ScriptedStore(db, settings, link_error=True)
    with pytest.raises(TokenIssuanceError):
        PhoneIdentityReconciler(settings, failing, http_client).reconcile(WIDGET_URL)
    assert db.query(User).count() == 1

    result = PhoneIdentityReconciler(settings, IdentityStore(db, settings), http_client).reconcile(WIDGET_URL)
    assert result["is_new_user"] is False
    assert db.query(User).count() == 1


def test_verification_fetch_error_on_server_error(db, settings, http_client, upstream):
    upstream.widget_status = 503
    with pytest.raises(VerificationFetchError):
        PhoneIdentityReconciler(settings, IdentityStore(db, settings), http_client).reconcile(WIDGET_URL)


# -------------------
# Redeeming the link
# -------------------
def test_token_hash_redeems_once(client):
    body = _verify(client).json()

    resp = client.post("/auth/verify", json={"token_hash": body["token_hash"], "type": "magiclink"})
    assert resp.status_code == 200
    session = resp.json()
    assert session["user_id"] == body["user_id"]
    assert session["token_type"] == "bearer"

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {session['access_token']}"})
    assert me.status_code == 200
    assert me.json()["phone"] == "+15551234567"
    assert me.json()["is_admin"] is False

    again = client.post("/auth/verify", json={"token_hash": body["token_hash"]})
    assert again.status_code == 401
    assert again.json() == {"error": "Token has expired or is invalid"}


def test_action_link_redirects_with_session(client):
    body = _verify(client, redirect_to="http://site.test/profile").json()
    parts = urlsplit(body["action_link"])
    assert parse_qs(parts.query)["type"] == ["magiclink"]

    resp = client.get(f"{parts.path}?{parts.query}", follow_redirects=False)

    assert resp.status_code == 303
    location = resp.headers["location"]
    assert location.startswith("http://site.test/profile#access_token=")


def test_unknown_token_hash_is_rejected(client):
    resp = client.post("/auth/verify", json={"token_hash": "0" * 64})
    assert resp.status_code == 401


def _follow(client, body, extra_query=""):
    parts = urlsplit(body["action_link"])
    return client.get(f"{parts.path}?{parts.query}{extra_query}", follow_redirects=False)


def test_foreign_redirect_is_dropped(client, db):
    body = _verify(client, redirect_to="https://evil.example/steal").json()

    link = db.query(LoginLink).one()
    assert link.redirect_to is None

    resp = _follow(client, body)
    assert resp.status_code == 303
    assert resp.headers["location"].startswith("http://site.test#access_token=")


def test_query_string_cannot_override_link_redirect(client):
    body = _verify(client, redirect_to="http://site.test/profile").json()

    resp = _follow(client, body, "&redirect_to=https%3A%2F%2Fevil.example%2F")

    assert resp.headers["location"].startswith("http://site.test/profile#access_token=")


def test_site_relative_redirect_resolves_against_site(client, db):
    body = _verify(client, redirect_to="/menu").json()

    assert db.query(LoginLink).one().redirect_to == "http://site.test/menu"
    assert _follow(client, body).headers["location"].startswith("http://site.test/menu#access_token=")


def test_allow_listed_origin_is_kept(client, settings):
    settings.redirect_allow_list = ["https://app.aurelia.test"]
    body = _verify(client, redirect_to="https://app.aurelia.test/orders").json()

    location = _follow(client, body).headers["location"]

    assert location.startswith("https://app.aurelia.test/orders#access_token=")
