# aurelia/config.py
from __future__ import annotations

import os
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env locally (safe in prod too)
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str) -> List[str]:
    return [v.strip().rstrip("/") for v in os.getenv(name, "").split(",") if v.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        return default


# -------------------
# Config (env-driven)
# -------------------
class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./aurelia.db")
    site_url: str = os.getenv("SITE_URL", "http://localhost:8080").rstrip("/")
    api_url: str = os.getenv("API_URL", "http://localhost:8000").rstrip("/")
    app_email_domain: str = os.getenv("APP_EMAIL_DOMAIN", "aurelia.app")
    # origins besides site_url that sign-in links may redirect to
    redirect_allow_list: List[str] = _env_list("REDIRECT_ALLOW_LIST")

    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    jwt_alg: str = os.getenv("JWT_ALG", "HS256")
    jwt_expire_minutes: int = _env_int("JWT_EXPIRE_MIN", 1440)
    magic_link_expire_minutes: int = _env_int("MAGIC_LINK_EXPIRE_MIN", 60)

    razorpay_key_id: str = os.getenv("RAZORPAY_KEY_ID", "").strip()
    razorpay_key_secret: str = os.getenv("RAZORPAY_KEY_SECRET", "").strip()
    razorpay_api_base: str = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com").rstrip("/")
    currency: str = os.getenv("CURRENCY", "INR")

    # applies to every outbound call (verification widget, gateway)
    http_timeout_seconds: float = _env_float("HTTP_TIMEOUT_SECONDS", 10.0)

    # identity scan bounds
    identity_page_size: int = _env_int("IDENTITY_PAGE_SIZE", 200)
    identity_max_pages: int = _env_int("IDENTITY_MAX_PAGES", 20)

    host: str = os.getenv("HOST", "127.0.0.1")
    port: int = _env_int("PORT", 8000)
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()
