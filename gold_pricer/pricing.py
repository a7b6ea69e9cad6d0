from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal, Sequence

from gold_pricer.errors import GoldPriceValidationError
from gold_pricer.matching import UpdateCandidate
from gold_pricer.shopify_api import AdminSession, ShopifyApiError, first_error_message

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

_VARIANT_PRICE_UPDATE_MUTATION = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
    productVariantsBulkUpdate(productId: $productId, variants: $variants) {
        productVariants {
            id
            price
        }
        userErrors {
            field
            message
        }
    }
}
"""

Outcome = Literal["nothing_to_do", "success", "partial", "failure"]


def validate_gold_price(raw: Any) -> Decimal:
    invalid = GoldPriceValidationError("Please enter a valid gold price (must be greater than 0)")
    if raw is None or isinstance(raw, bool):
        raise invalid
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise invalid from None
    if not value.is_finite() or value <= 0:
        raise invalid
    try:
        value.quantize(_CENT)
    except InvalidOperation:
        raise invalid from None
    return value


def compute_new_price(gold_price: Decimal, multiplier: Decimal) -> str:
    """``gold_price * multiplier`` rounded half-up to cents, e.g. ``"1000.00"``."""
    amount = (Decimal(gold_price) * Decimal(multiplier)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return format(amount, "f")


@dataclass(frozen=True)
class UpdateResult:
    variant_id: str
    title: str
    multiplier: Decimal
    old_price: str
    target_price: str | None
    success: bool
    new_price: str | None = None
    error: str | None = None


@dataclass
class ReconciliationSummary:
    gold_price: Decimal
    results: list[UpdateResult] = field(default_factory=list)
    no_match_message: str = "No products matched. Nothing was updated."

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    @property
    def success(self) -> bool:
        return self.succeeded > 0

    @property
    def outcome(self) -> Outcome:
        if self.attempted == 0:
            return "nothing_to_do"
        if self.failed == 0:
            return "success"
        if self.succeeded == 0:
            return "failure"
        return "partial"

    @property
    def message(self) -> str:
        outcome = self.outcome
        if outcome == "nothing_to_do":
            return self.no_match_message
        if outcome == "failure":
            return "Failed to update any products. Check server logs for details."
        message = f"Updated {self.succeeded} products successfully"
        if self.failed:
            message += f", {self.failed} failed"
        return message


class PriceReconciler:
    def __init__(self, session: AdminSession, *, max_concurrency: int | None = None) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._session = session
        self._max_concurrency = max_concurrency

    async def reconcile(
        self,
        gold_price: Any,
        update_set: Sequence[UpdateCandidate],
        *,
        no_match_message: str | None = None,
    ) -> ReconciliationSummary:
        validated_price = validate_gold_price(gold_price)
        summary = ReconciliationSummary(gold_price=validated_price)
        if no_match_message:
            summary.no_match_message = no_match_message
        if not update_set:
            logger.info("Gold price %s matched no variants", validated_price)
            return summary

        logger.info("Reconciling %d variants at gold price %s", len(update_set), validated_price)
        semaphore = asyncio.Semaphore(self._max_concurrency) if self._max_concurrency else None

        async def run(candidate: UpdateCandidate) -> UpdateResult:
            if semaphore is None:
                return await self._update_one(validated_price, candidate)
            async with semaphore:
                return await self._update_one(validated_price, candidate)

        summary.results = list(await asyncio.gather(*(run(candidate) for candidate in update_set)))
        logger.info("Update complete: %d succeeded, %d failed", summary.succeeded, summary.failed)
        return summary

    async def _update_one(self, gold_price: Decimal, candidate: UpdateCandidate) -> UpdateResult:
        target_price: str | None = None

        def failure(message: str) -> UpdateResult:
            return UpdateResult(
                variant_id=candidate.variant.id,
                title=candidate.title,
                multiplier=candidate.multiplier,
                old_price=candidate.old_price,
                target_price=target_price,
                success=False,
                error=message,
            )

        try:
            target_price = compute_new_price(gold_price, candidate.multiplier)
        except InvalidOperation:
            logger.error("Price for %s at multiplier %s is out of range", candidate.title, candidate.multiplier)
            return failure("Computed price is out of range")

        logger.info("Updating %s from %s to %s", candidate.title, candidate.old_price, target_price)
        try:
            body = await self._session.execute(
                _VARIANT_PRICE_UPDATE_MUTATION,
                {
                    "productId": candidate.variant.product_id,
                    "variants": [{"id": candidate.variant.id, "price": target_price}],
                },
            )
        except ShopifyApiError as exc:
            logger.error("Error updating %s: %s", candidate.title, exc)
            return failure(str(exc))
        except Exception as exc:
            logger.exception("Unexpected error updating %s", candidate.title)
            return failure(str(exc) or exc.__class__.__name__)

        graphql_error = first_error_message(body.get("errors"))
        if graphql_error:
            logger.error("Error updating %s: %s", candidate.title, body.get("errors"))
            return failure(graphql_error)

        update_data = (body.get("data") or {}).get("productVariantsBulkUpdate")
        if not isinstance(update_data, dict):
            logger.error("Error updating %s: response is missing productVariantsBulkUpdate", candidate.title)
            return failure("productVariantsBulkUpdate response is missing")
        user_error = first_error_message(update_data.get("userErrors"))
        if user_error:
            logger.error("Error updating %s: %s", candidate.title, update_data.get("userErrors"))
            return failure(user_error)

        logger.info("Successfully updated %s to %s", candidate.title, target_price)
        return UpdateResult(
            variant_id=candidate.variant.id,
            title=candidate.title,
            multiplier=candidate.multiplier,
            old_price=candidate.old_price,
            target_price=target_price,
            success=True,
            new_price=target_price,
        )
