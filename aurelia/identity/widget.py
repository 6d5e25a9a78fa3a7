# aurelia/identity/widget.py
from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from ..errors import VerificationFetchError

logger = logging.getLogger(__name__)


def fetch_verification(client: httpx.Client, url: str, timeout: float) -> Dict[str, Any]:
    """Download the JSON document the phone-verification widget published for this login."""
    logger.info("Fetching phone verification data from %s", url)
    try:
        resp = client.get(url, timeout=timeout)
    except httpx.HTTPError as exc:
        logger.warning("Verification fetch failed: %r", exc)
        raise VerificationFetchError(details=str(exc) or type(exc).__name__) from exc

    if resp.is_error:
        logger.warning("Verification endpoint answered HTTP %s", resp.status_code)
        raise VerificationFetchError()

    try:
        data = resp.json()
    except ValueError as exc:
        raise VerificationFetchError(details="Verification response is not JSON") from exc

    if not isinstance(data, dict):
        raise VerificationFetchError(details="Verification response is not a JSON object")
    return data
