from __future__ import annotations

import base64
import hashlib
import hmac
import re
from collections.abc import Iterable

from gold_pricer.config import settings
from gold_pricer.errors import InvalidShopDomainError

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")
_OAUTH_EXCLUDED_PARAMS = frozenset({"hmac", "signature"})


def normalize_shop_domain(shop: str | None) -> str:
    normalized = (shop or "").strip().lower()
    if not _SHOP_DOMAIN_RE.fullmatch(normalized):
        raise InvalidShopDomainError("shop must be a valid *.myshopify.com domain")
    return normalized


def _sign(message: bytes) -> bytes:
    return hmac.new(settings.SHOPIFY_APP_API_SECRET.encode("utf-8"), message, hashlib.sha256).digest()


def oauth_query_digest(query_items: Iterable[tuple[str, str]]) -> str:
    signed = sorted(
        (key, value) for key, value in query_items if key not in _OAUTH_EXCLUDED_PARAMS
    )
    message = "&".join(f"{key}={value}" for key, value in signed)
    return _sign(message.encode("utf-8")).hex()


def verify_oauth_hmac(query_items: Iterable[tuple[str, str]]) -> bool:
    items = list(query_items)
    supplied = next((value for key, value in items if key == "hmac"), None)
    if not supplied:
        return False
    return hmac.compare_digest(oauth_query_digest(items), supplied)


def webhook_digest(body: bytes) -> str:
    return base64.b64encode(_sign(body)).decode("utf-8")


def verify_webhook_hmac(*, body: bytes, supplied_hmac: str | None) -> bool:
    if not supplied_hmac:
        return False
    return hmac.compare_digest(webhook_digest(body), supplied_hmac)


def verify_operator_token(authorization: str | None) -> bool:
    if not authorization or not authorization.startswith("Bearer "):
        return False
    token = authorization[len("Bearer "):].strip()
    return bool(token) and hmac.compare_digest(token, settings.GOLD_SYNC_INTERNAL_API_TOKEN)
