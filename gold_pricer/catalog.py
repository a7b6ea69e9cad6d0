from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from gold_pricer.shopify_api import AdminSession, ShopifyApiError, ShopifyAuthenticationError, first_error_message

logger = logging.getLogger(__name__)

MULTIPLIER_NAMESPACE = "gold"
MULTIPLIER_KEY = "multiplier"

_CATALOG_QUERY = """
query goldPriceCatalog(
    $first: Int!
    $after: String
    $variantsFirst: Int!
    $withMetafields: Boolean!
    $metafieldNamespace: String!
) {
    products(first: $first, after: $after) {
        pageInfo {
            hasNextPage
            endCursor
        }
        edges {
            node {
                id
                title
                variants(first: $variantsFirst) {
                    edges {
                        node {
                            id
                            title
                            price
                            metafields(first: 10, namespace: $metafieldNamespace) @include(if: $withMetafields) {
                                edges {
                                    node {
                                        namespace
                                        key
                                        value
                                        type
                                    }
                                }
                            }
                        }
                    }
                }
            }
        }
    }
}
"""


class _UnexpectedCatalogShape(ValueError):
    pass


@dataclass(frozen=True)
class Metafield:
    namespace: str
    key: str
    value: str | None
    type: str | None = None


@dataclass(frozen=True)
class Variant:
    id: str
    product_id: str
    title: str | None
    price: str
    metafields: tuple[Metafield, ...] = ()

    def metafield(self, namespace: str, key: str) -> Metafield | None:
        for item in self.metafields:
            if item.namespace == namespace and item.key == key:
                return item
        return None


@dataclass(frozen=True)
class Product:
    id: str
    title: str
    variants: tuple[Variant, ...] = ()


@dataclass
class CatalogResult:
    products: list[Product] = field(default_factory=list)
    error: str | None = None
    auth_failed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def variant_count(self) -> int:
        return sum(len(product.variants) for product in self.products)


def _edges(connection: Any, *, label: str) -> list[dict[str, Any]]:
    if connection is None:
        return []
    if not isinstance(connection, dict):
        raise _UnexpectedCatalogShape(f"{label} connection is not an object")
    edges = connection.get("edges") or []
    if not isinstance(edges, list):
        raise _UnexpectedCatalogShape(f"{label}.edges is not a list")
    nodes: list[dict[str, Any]] = []
    for edge in edges:
        node = edge.get("node") if isinstance(edge, dict) else None
        if not isinstance(node, dict):
            raise _UnexpectedCatalogShape(f"{label} edge is missing node")
        nodes.append(node)
    return nodes


def _parse_variant(node: dict[str, Any], *, product_id: str) -> Variant:
    variant_id = node.get("id")
    if not isinstance(variant_id, str) or not variant_id:
        raise _UnexpectedCatalogShape("variant is missing id")
    price = node.get("price")
    if price is None:
        raise _UnexpectedCatalogShape(f"variant {variant_id} is missing price")
    title = node.get("title")
    metafields = tuple(
        Metafield(
            namespace=str(item.get("namespace") or ""),
            key=str(item.get("key") or ""),
            value=item.get("value"),
            type=item.get("type"),
        )
        for item in _edges(node.get("metafields"), label="metafields")
    )
    return Variant(
        id=variant_id,
        product_id=product_id,
        title=title if isinstance(title, str) else None,
        price=str(price),
        metafields=metafields,
    )


def _parse_products_page(data: dict[str, Any]) -> tuple[list[Product], str | None]:
    products_connection = data.get("products")
    if not isinstance(products_connection, dict):
        raise _UnexpectedCatalogShape("response is missing products")

    products: list[Product] = []
    for node in _edges(products_connection, label="products"):
        product_id = node.get("id")
        title = node.get("title")
        if not isinstance(product_id, str) or not product_id:
            raise _UnexpectedCatalogShape("product is missing id")
        if not isinstance(title, str):
            raise _UnexpectedCatalogShape(f"product {product_id} is missing title")
        variants = tuple(
            _parse_variant(variant_node, product_id=product_id)
            for variant_node in _edges(node.get("variants"), label="variants")
        )
        products.append(Product(id=product_id, title=title, variants=variants))

    page_info = products_connection.get("pageInfo") or {}
    next_cursor = None
    if page_info.get("hasNextPage") and isinstance(page_info.get("endCursor"), str):
        next_cursor = page_info["endCursor"]
    return products, next_cursor


async def fetch_catalog(
    session: AdminSession,
    *,
    include_metafields: bool = False,
    product_limit: int = 50,
    variant_limit: int = 10,
    max_pages: int = 1,
) -> CatalogResult:
    """Read products and their variants from the shop.

    Only ``max_pages`` pages of ``product_limit`` products are read. Failures
    come back as a :class:`CatalogResult` with ``error`` set, never as an
    exception.
    """
    products: list[Product] = []
    cursor: str | None = None
    for page in range(max_pages):
        variables = {
            "first": product_limit,
            "after": cursor,
            "variantsFirst": variant_limit,
            "withMetafields": include_metafields,
            "metafieldNamespace": MULTIPLIER_NAMESPACE,
        }
        try:
            body = await session.execute(_CATALOG_QUERY, variables)
        except ShopifyAuthenticationError as exc:
            logger.warning("Catalog fetch rejected for %s: %s", session.shop_domain, exc)
            return CatalogResult(error=str(exc), auth_failed=True)
        except ShopifyApiError as exc:
            logger.error("Catalog fetch failed for %s: %s", session.shop_domain, exc)
            return CatalogResult(error=f"Failed to fetch products: {exc}")

        graphql_error = first_error_message(body.get("errors"))
        if graphql_error:
            logger.error("Catalog query returned GraphQL errors: %s", body.get("errors"))
            return CatalogResult(error=f"Failed to fetch products: {graphql_error}")

        data = body.get("data")
        try:
            if not isinstance(data, dict):
                raise _UnexpectedCatalogShape("response is missing data")
            page_products, cursor = _parse_products_page(data)
        except _UnexpectedCatalogShape as exc:
            logger.error("Unexpected catalog response from %s: %s", session.shop_domain, exc)
            return CatalogResult(error=f"Failed to fetch products: invalid response ({exc})")

        products.extend(page_products)
        logger.info("Fetched catalog page %d with %d products", page + 1, len(page_products))
        if cursor is None:
            break

    return CatalogResult(products=products)
