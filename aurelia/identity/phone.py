# aurelia/identity/phone.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

_WS_RE = re.compile(r"\s+")


def normalize_phone(value: Optional[str]) -> str:
    """``"15551234567"`` and ``"+15551234567"`` both become ``"+15551234567"``."""
    v = (value or "").strip()
    if not v:
        return ""
    return v if v.startswith("+") else "+" + v.lstrip("+")


def strip_plus(value: Optional[str]) -> str:
    return (value or "").lstrip("+").strip()


def synthetic_email(raw_phone: str, domain: str) -> str:
    return f"phone_{raw_phone}@{domain}"


@dataclass(frozen=True)
class VerifiedPhone:
    raw: str  # country code + number, digits only
    first_name: str
    last_name: str

    @property
    def display(self) -> str:
        return "+" + self.raw

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def login_email(self, domain: str) -> str:
        return synthetic_email(self.raw, domain)

    def matches(self, phone: Optional[str]) -> bool:
        if not phone:
            return False
        return normalize_phone(phone) == self.display or strip_plus(phone) == self.raw


def parse_widget_payload(data: Dict[str, Any]) -> VerifiedPhone:
    country = _WS_RE.sub("", str(data.get("user_country_code") or "")).replace("+", "")
    number = _WS_RE.sub("", str(data.get("user_phone_number") or ""))
    return VerifiedPhone(
        raw=f"{country}{number}",
        first_name=str(data.get("user_first_name") or "").strip(),
        last_name=str(data.get("user_last_name") or "").strip(),
    )
