from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from gold_pricer.config import settings

logger = logging.getLogger(__name__)

VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"


class ShopifyApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class ShopifyAuthenticationError(ShopifyApiError):
    def __init__(self, *, message: str) -> None:
        super().__init__(message=message, status_code=401)


def first_error_message(errors: Any) -> str | None:
    """Return the first ``message`` of a GraphQL ``errors``/``userErrors`` list."""
    if not isinstance(errors, list) or not errors:
        return None
    first = errors[0]
    if isinstance(first, dict):
        message = first.get("message")
        if isinstance(message, str) and message:
            return message
    return str(first)


class ShopifyApiClient:
    def __init__(self) -> None:
        self._timeout = settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS

    async def exchange_code_for_access_token(self, *, shop_domain: str, code: str) -> tuple[str, str]:
        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "client_secret": settings.SHOPIFY_APP_API_SECRET,
            "code": code,
        }
        response = await self._post_json(url=url, payload=payload)
        access_token = response.get("access_token")
        scopes = response.get("scope")
        if not isinstance(access_token, str) or not access_token:
            raise ShopifyApiError(message="OAuth token exchange response is missing access_token")
        if not isinstance(scopes, str):
            raise ShopifyApiError(message="OAuth token exchange response is missing scope")
        return access_token, scopes

    async def register_uninstall_webhook(self, *, shop_domain: str, access_token: str) -> None:
        mutation = """
        mutation webhookSubscriptionCreate(
            $topic: WebhookSubscriptionTopic!
            $webhookSubscription: WebhookSubscriptionInput!
        ) {
            webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
                webhookSubscription {
                    id
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        variables = {
            "topic": "APP_UNINSTALLED",
            "webhookSubscription": {
                "callbackUrl": f"{settings.app_base_url}/webhooks/app/uninstalled",
                "format": "JSON",
            },
        }
        body = await self.execute_admin_query(
            shop_domain=shop_domain,
            access_token=access_token,
            query=mutation,
            variables=variables,
        )
        top_level_error = first_error_message(body.get("errors"))
        if top_level_error:
            raise ShopifyApiError(message=f"Webhook registration failed: {top_level_error}")

        create_data = (body.get("data") or {}).get("webhookSubscriptionCreate") or {}
        user_errors = create_data.get("userErrors") or []
        # Re-installs hit the existing subscription; Shopify reports it as taken.
        remaining = [
            error
            for error in user_errors
            if "already been taken" not in str(error.get("message", "")).lower()
        ]
        if remaining:
            messages = "; ".join(str(error.get("message")) for error in remaining)
            raise ShopifyApiError(message=f"Webhook registration failed for APP_UNINSTALLED: {messages}")

    async def execute_admin_query(
        self,
        *,
        shop_domain: str,
        access_token: str,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"https://{shop_domain}/admin/api/{settings.SHOPIFY_ADMIN_API_VERSION}/graphql.json"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        return await self._post_json(url=url, payload=payload, headers=headers)

    def session_for(self, *, shop_domain: str, access_token: str) -> "AdminSession":
        return AdminSession(shop_domain=shop_domain, access_token=access_token, client=self)

    async def _post_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ShopifyApiError(
                message=f"Shopify request timed out after {self._timeout:.1f}s",
                status_code=504,
            ) from exc
        except httpx.RequestError as exc:
            raise ShopifyApiError(message=f"Network error while calling Shopify: {exc}") from exc

        if response.status_code in (401, 403):
            raise ShopifyAuthenticationError(
                message=f"Shopify rejected the access token ({response.status_code})",
            )
        if response.status_code >= 400:
            raise ShopifyApiError(
                message=f"Shopify API call failed ({response.status_code}): {response.text}",
                status_code=502,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyApiError(message="Shopify API returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message="Shopify API response must be a JSON object")
        return body


@dataclass(frozen=True)
class AdminSession:
    """Authenticated Admin API capability for one shop.

    Pricing code only calls :meth:`execute`; how the token was obtained is
    the installation store's concern.
    """

    shop_domain: str
    access_token: str
    client: ShopifyApiClient

    async def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        logger.debug("Admin GraphQL call for %s", self.shop_domain)
        return await self.client.execute_admin_query(
            shop_domain=self.shop_domain,
            access_token=self.access_token,
            query=query,
            variables=variables,
        )
