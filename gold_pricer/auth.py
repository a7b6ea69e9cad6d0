"""Admin session provider.

Turns the operator's bearer token plus a ``shop`` parameter into an
:class:`AdminSession` backed by the stored offline access token.
"""
from __future__ import annotations

import logging

from fastapi import Depends, Header, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from gold_pricer.db import get_session
from gold_pricer.errors import AuthenticationError
from gold_pricer.models import ShopInstallation
from gold_pricer.security import normalize_shop_domain, verify_operator_token
from gold_pricer.shopify_api import AdminSession, ShopifyApiClient

logger = logging.getLogger(__name__)

shopify_api = ShopifyApiClient()


def require_operator_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    if not verify_operator_token(authorization):
        raise AuthenticationError("Missing or invalid operator bearer token")


def find_installation(session: Session, shop_domain: str) -> ShopInstallation | None:
    return session.scalars(
        select(ShopInstallation).where(ShopInstallation.shop_domain == shop_domain)
    ).first()


def get_admin_session(
    shop: str = Query(...),
    _: None = Depends(require_operator_token),
    session: Session = Depends(get_session),
) -> AdminSession:
    shop_domain = normalize_shop_domain(shop)
    installation = find_installation(session, shop_domain)
    if installation is None or not installation.is_active:
        logger.warning("No active installation for %s", shop_domain)
        raise AuthenticationError(f"No active Shopify installation found for {shop_domain}")
    return shopify_api.session_for(
        shop_domain=installation.shop_domain,
        access_token=installation.admin_access_token,
    )
