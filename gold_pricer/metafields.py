from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from gold_pricer.catalog import MULTIPLIER_KEY, MULTIPLIER_NAMESPACE
from gold_pricer.errors import AuthenticationError, MetafieldWriteError, MultiplierValidationError
from gold_pricer.matching import parse_multiplier
from gold_pricer.shopify_api import (
    VARIANT_GID_PREFIX,
    AdminSession,
    ShopifyApiError,
    ShopifyAuthenticationError,
    first_error_message,
)

logger = logging.getLogger(__name__)

MULTIPLIER_TYPE = "number_decimal"

_METAFIELDS_SET_MUTATION = """
mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
    metafieldsSet(metafields: $metafields) {
        metafields {
            id
            namespace
            key
            value
            type
        }
        userErrors {
            field
            message
        }
    }
}
"""


@dataclass(frozen=True)
class MetafieldWriteResult:
    variant_id: str
    multiplier: Decimal
    metafield_id: str | None
    value: str


def normalize_variant_id(raw: Any) -> str:
    """Accept a ProductVariant GID or a numeric legacy id."""
    if not isinstance(raw, (str, int)) or isinstance(raw, bool):
        raise MultiplierValidationError("variantId must be a ProductVariant GID or numeric id")
    cleaned = str(raw).strip()
    if cleaned.isdigit():
        return f"{VARIANT_GID_PREFIX}{cleaned}"
    if cleaned.startswith(VARIANT_GID_PREFIX) and cleaned[len(VARIANT_GID_PREFIX):].isdigit():
        return cleaned
    raise MultiplierValidationError("variantId must be a ProductVariant GID or numeric id")


def validate_multiplier(raw: Any) -> Decimal:
    multiplier = parse_multiplier(raw)
    if multiplier is None or multiplier <= 0:
        raise MultiplierValidationError("multiplier must be a number greater than 0")
    return multiplier


async def set_multiplier(session: AdminSession, variant_id: Any, multiplier: Any) -> MetafieldWriteResult:
    """Upsert ``gold.multiplier`` on one variant; repeated writes overwrite."""
    owner_id = normalize_variant_id(variant_id)
    value = validate_multiplier(multiplier)
    serialized = format(value.normalize(), "f")

    logger.info("Setting %s.%s=%s on %s", MULTIPLIER_NAMESPACE, MULTIPLIER_KEY, serialized, owner_id)
    try:
        body = await session.execute(
            _METAFIELDS_SET_MUTATION,
            {
                "metafields": [
                    {
                        "ownerId": owner_id,
                        "namespace": MULTIPLIER_NAMESPACE,
                        "key": MULTIPLIER_KEY,
                        "type": MULTIPLIER_TYPE,
                        "value": serialized,
                    }
                ]
            },
        )
    except ShopifyAuthenticationError as exc:
        raise AuthenticationError(str(exc)) from exc
    except ShopifyApiError as exc:
        raise MetafieldWriteError(f"metafieldsSet failed: {exc}", status_code=exc.status_code) from exc

    graphql_error = first_error_message(body.get("errors"))
    if graphql_error:
        raise MetafieldWriteError(f"metafieldsSet failed: {graphql_error}")

    set_data = (body.get("data") or {}).get("metafieldsSet")
    if not isinstance(set_data, dict):
        raise MetafieldWriteError("metafieldsSet response is missing data")
    user_errors = set_data.get("userErrors") or []
    if user_errors:
        messages = "; ".join(str(error.get("message")) for error in user_errors)
        raise MetafieldWriteError(f"metafieldsSet failed: {messages}", status_code=409)

    written = next(
        (
            item
            for item in set_data.get("metafields") or []
            if isinstance(item, dict)
            and item.get("namespace") == MULTIPLIER_NAMESPACE
            and item.get("key") == MULTIPLIER_KEY
        ),
        None,
    )
    if written is None:
        raise MetafieldWriteError("metafieldsSet did not report the multiplier metafield")

    logger.info("Stored multiplier %s on %s", written.get("value"), owner_id)
    return MetafieldWriteResult(
        variant_id=owner_id,
        multiplier=value,
        metafield_id=written.get("id"),
        value=str(written.get("value", serialized)),
    )
