from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Protocol, Sequence

from gold_pricer.catalog import MULTIPLIER_KEY, MULTIPLIER_NAMESPACE, Product, Variant

logger = logging.getLogger(__name__)

DEFAULT_VARIANT_TITLE = "Default"


def normalize_variant_title(title: str | None) -> str:
    if title is None or not title.strip():
        return DEFAULT_VARIANT_TITLE
    return title.strip()


def parse_multiplier(raw: Any) -> Decimal | None:
    """Parse a multiplier value; ``None`` when it is not a finite number."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


@dataclass(frozen=True)
class MultiplierRule:
    product_title: str
    variant_title: str
    multiplier: Decimal

    def matches(self, product_title: str, variant_title: str | None) -> bool:
        return (
            self.product_title.strip().lower() == product_title.strip().lower()
            and normalize_variant_title(self.variant_title).lower()
            == normalize_variant_title(variant_title).lower()
        )


@dataclass(frozen=True)
class UpdateCandidate:
    variant: Variant
    product_title: str
    multiplier: Decimal

    @property
    def old_price(self) -> str:
        return self.variant.price

    @property
    def title(self) -> str:
        return f"{self.product_title} - {normalize_variant_title(self.variant.title)}"


class MatchingStrategy(Protocol):
    name: str
    no_match_message: str

    def match(self, products: Sequence[Product]) -> list[UpdateCandidate]: ...


class NameMatchingStrategy:
    name = "name"
    no_match_message = "No products matched the configured multipliers. Make sure product names match exactly."

    def __init__(self, rules: Sequence[MultiplierRule]) -> None:
        self._rules = list(rules)

    @property
    def rules(self) -> list[MultiplierRule]:
        return list(self._rules)

    def resolve(self, product_title: str, variant_title: str | None) -> MultiplierRule | None:
        for rule in self._rules:
            if rule.matches(product_title, variant_title):
                return rule
        return None

    def match(self, products: Sequence[Product]) -> list[UpdateCandidate]:
        candidates: list[UpdateCandidate] = []
        for product in products:
            for variant in product.variants:
                rule = self.resolve(product.title, variant.title)
                if rule is None:
                    continue
                if rule.multiplier <= 0:
                    logger.info(
                        "Skipping %s - %s: rule multiplier is %s",
                        product.title,
                        normalize_variant_title(variant.title),
                        rule.multiplier,
                    )
                    continue
                candidates.append(
                    UpdateCandidate(variant=variant, product_title=product.title, multiplier=rule.multiplier)
                )
        logger.info("Name matching selected %d variants", len(candidates))
        return candidates


class MetafieldMatchingStrategy:
    name = "metafield"
    no_match_message = (
        f"No variants carry a positive {MULTIPLIER_NAMESPACE}.{MULTIPLIER_KEY} metafield."
    )

    def __init__(self, namespace: str = MULTIPLIER_NAMESPACE, key: str = MULTIPLIER_KEY) -> None:
        self.namespace = namespace
        self.key = key

    def match(self, products: Sequence[Product]) -> list[UpdateCandidate]:
        candidates: list[UpdateCandidate] = []
        for product in products:
            for variant in product.variants:
                label = f"{product.title} - {normalize_variant_title(variant.title)}"
                metafield = variant.metafield(self.namespace, self.key)
                if metafield is None:
                    logger.info("Skipping %s - no %s.%s metafield", label, self.namespace, self.key)
                    continue
                multiplier = parse_multiplier(metafield.value)
                if multiplier is None:
                    logger.warning("Skipping %s - unparsable multiplier %r", label, metafield.value)
                    continue
                if multiplier <= 0:
                    logger.info("Skipping %s - multiplier is %s", label, multiplier)
                    continue
                candidates.append(
                    UpdateCandidate(variant=variant, product_title=product.title, multiplier=multiplier)
                )
        logger.info("Metafield matching selected %d variants", len(candidates))
        return candidates


def parse_rules(raw: Any) -> list[MultiplierRule]:
    """Flatten ``[{"title": ..., "variants": [{"title": ..., "multiplier": ...}]}]``.

    Table order is kept so the first matching rule wins.
    """
    if not isinstance(raw, list):
        raise ValueError("Multiplier rules must be a list of products")

    rules: list[MultiplierRule] = []
    for product_index, product in enumerate(raw):
        if not isinstance(product, dict):
            raise ValueError(f"Rule entry {product_index} must be an object")
        product_title = product.get("title")
        if not isinstance(product_title, str) or not product_title.strip():
            raise ValueError(f"Rule entry {product_index} is missing a product title")
        variants = product.get("variants")
        if not isinstance(variants, list):
            raise ValueError(f"Rule entry {product_title!r} must list its variants")
        for variant in variants:
            if not isinstance(variant, dict):
                raise ValueError(f"Variant rule for {product_title!r} must be an object")
            multiplier = parse_multiplier(variant.get("multiplier"))
            if multiplier is None or multiplier < 0:
                raise ValueError(
                    f"Variant rule for {product_title!r} has invalid multiplier {variant.get('multiplier')!r}"
                )
            variant_title = variant.get("title")
            rules.append(
                MultiplierRule(
                    product_title=product_title,
                    variant_title=normalize_variant_title(None if variant_title is None else str(variant_title)),
                    multiplier=multiplier,
                )
            )
    return rules


def load_rules(path: str | Path) -> list[MultiplierRule]:
    rules_path = Path(path)
    with rules_path.open(encoding="utf-8") as handle:
        raw = json.load(handle)
    rules = parse_rules(raw)
    logger.info("Loaded %d multiplier rules from %s", len(rules), rules_path)
    return rules


def build_matching_strategy(name: str, *, rules_path: str | Path | None = None) -> MatchingStrategy:
    if name == MetafieldMatchingStrategy.name:
        return MetafieldMatchingStrategy()
    if name == NameMatchingStrategy.name:
        if rules_path is None:
            logger.warning("GOLD_MULTIPLIER_RULES_PATH is not set; name matching has no rules")
            return NameMatchingStrategy([])
        return NameMatchingStrategy(load_rules(rules_path))
    raise ValueError(f"Unknown matching strategy: {name}")
