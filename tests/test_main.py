from __future__ import annotations

import base64
import hashlib
import hmac
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete, select

import gold_pricer.main as main_module
from gold_pricer.config import settings
from gold_pricer.db import SessionLocal, init_db
from gold_pricer.models import OAuthState, ShopInstallation

SHOP = "gold-shop.myshopify.com"
AUTH_HEADERS = {"Authorization": "Bearer operator_token"}


def _variant_node(index: int, title: str, price: str, multiplier: str | None = None) -> dict:
    node = {"id": f"gid://shopify/ProductVariant/{index}", "title": title, "price": price}
    if multiplier is not None:
        node["metafields"] = {
            "edges": [
                {
                    "node": {
                        "namespace": "gold",
                        "key": "multiplier",
                        "value": multiplier,
                        "type": "number_decimal",
                    }
                }
            ]
        }
    return node


def _catalog_body(products: list[tuple[int, str, list[dict]]]) -> dict:
    return {
        "data": {
            "products": {
                "pageInfo": {"hasNextPage": False, "endCursor": None},
                "edges": [
                    {
                        "node": {
                            "id": f"gid://shopify/Product/{index}",
                            "title": title,
                            "variants": {"edges": [{"node": variant} for variant in variants]},
                        }
                    }
                    for index, title, variants in products
                ],
            }
        }
    }


class FakeAdminApi:
    def __init__(self, catalog: dict, failing_variants: frozenset[str] = frozenset()) -> None:
        self.catalog = catalog
        self.failing_variants = failing_variants
        self.queries: list[tuple[str, dict | None]] = []

    async def execute_admin_query(self, *, shop_domain: str, access_token: str, query: str, variables=None):
        assert shop_domain == SHOP
        assert access_token == "shpat_admin"
        self.queries.append((query, variables))
        if "goldPriceCatalog" in query:
            return self.catalog
        if "productVariantsBulkUpdate" in query:
            variant = variables["variants"][0]
            if variant["id"] in self.failing_variants:
                return {
                    "data": {
                        "productVariantsBulkUpdate": {
                            "productVariants": [],
                            "userErrors": [{"field": ["price"], "message": "Price is invalid"}],
                        }
                    }
                }
            return {"data": {"productVariantsBulkUpdate": {"productVariants": [variant], "userErrors": []}}}
        if "metafieldsSet" in query:
            item = variables["metafields"][0]
            if item["ownerId"].endswith("/404"):
                return {
                    "data": {
                        "metafieldsSet": {
                            "metafields": [],
                            "userErrors": [{"field": ["ownerId"], "message": "Owner does not exist"}],
                        }
                    }
                }
            return {
                "data": {
                    "metafieldsSet": {
                        "metafields": [{"id": "gid://shopify/Metafield/1", **item}],
                        "userErrors": [],
                    }
                }
            }
        raise AssertionError(f"Unexpected query: {query}")

    def calls_matching(self, marker: str) -> list[dict | None]:
        return [variables for query, variables in self.queries if marker in query]


@pytest.fixture()
def db_session():
    init_db()
    session = SessionLocal()
    session.execute(delete(OAuthState))
    session.execute(delete(ShopInstallation))
    session.commit()
    try:
        yield session
    finally:
        session.execute(delete(OAuthState))
        session.execute(delete(ShopInstallation))
        session.commit()
        session.close()


@pytest.fixture()
def installed_shop(db_session):
    db_session.add(ShopInstallation(shop_domain=SHOP, admin_access_token="shpat_admin", scopes="read_products"))
    db_session.commit()
    return SHOP


@pytest.fixture()
def api_client():
    with TestClient(main_module.app) as client:
        yield client


def _install_fake_api(monkeypatch, fake: FakeAdminApi) -> FakeAdminApi:
    monkeypatch.setattr(main_module.shopify_api, "execute_admin_query", fake.execute_admin_query)
    return fake


def test_health(api_client):
    assert api_client.get("/health").json() == {"ok": True}


def test_update_prices_requires_operator_token(api_client, installed_shop):
    response = api_client.post("/v1/prices/update", params={"shop": SHOP}, data={"goldPrice": "2000"})

    assert response.status_code == 401
    assert response.json()["success"] is False


def test_update_prices_requires_active_installation(api_client, db_session):
    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP},
        data={"goldPrice": "2000"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 401
    assert "No active Shopify installation" in response.json()["error"]


@pytest.mark.parametrize("gold_price", ["0", "-10", "abc", ""])
def test_update_prices_rejects_invalid_gold_price_before_calling_shopify(
    api_client, installed_shop, monkeypatch, gold_price
):
    fake = _install_fake_api(monkeypatch, FakeAdminApi(_catalog_body([])))

    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP},
        data={"goldPrice": gold_price},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 400
    assert response.json() == {
        "error": "Please enter a valid gold price (must be greater than 0)",
        "success": False,
    }
    assert fake.queries == []


def test_update_prices_by_name_from_form(api_client, installed_shop, monkeypatch):
    fake = _install_fake_api(
        monkeypatch,
        FakeAdminApi(
            _catalog_body(
                [
                    (1, "Iced Out Chain", [_variant_node(11, "", "900.00"), _variant_node(12, "7", "900.00")]),
                    (2, "Rolex Watch", [_variant_node(21, "1", "1500.00")]),
                    (3, "Silver Ring", [_variant_node(31, "", "40.00")]),
                ]
            )
        ),
    )

    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP},
        data={"goldPrice": "2000.00"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["outcome"] == "success"
    assert payload["strategy"] == "name"
    assert payload["goldPrice"] == "2000.00"
    assert (payload["attempted"], payload["succeeded"], payload["failed"]) == (2, 2, 0)
    assert payload["message"] == "Updated 2 products successfully"
    assert [item["title"] for item in payload["details"]] == ["Iced Out Chain - Default", "Rolex Watch - 1"]
    assert [item["newPrice"] for item in payload["details"]] == ["1000.00", "1000.00"]
    assert payload["details"][0]["oldPrice"] == "900.00"
    catalog_variables = fake.calls_matching("goldPriceCatalog")[0]
    assert catalog_variables["withMetafields"] is False


def test_update_prices_by_metafield_reports_partial_failure(api_client, installed_shop, monkeypatch):
    _install_fake_api(
        monkeypatch,
        FakeAdminApi(
            _catalog_body(
                [
                    (
                        1,
                        "Chain",
                        [
                            _variant_node(11, "", "10.00", multiplier="0.5"),
                            _variant_node(12, "b", "10.00", multiplier="0.25"),
                            _variant_node(13, "c", "10.00", multiplier="0"),
                            _variant_node(14, "d", "10.00"),
                        ],
                    )
                ]
            ),
            failing_variants=frozenset({"gid://shopify/ProductVariant/12"}),
        ),
    )

    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP, "strategy": "metafield"},
        json={"goldPrice": 1999.99},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["outcome"] == "partial"
    assert payload["success"] is True
    assert (payload["attempted"], payload["succeeded"], payload["failed"]) == (2, 1, 1)
    assert payload["message"] == "Updated 1 products successfully, 1 failed"
    succeeded, failed = payload["details"]
    assert succeeded["newPrice"] == "1000.00"
    assert failed["success"] is False
    assert failed["newPrice"] is None
    assert failed["targetPrice"] == "500.00"
    assert failed["error"] == "Price is invalid"


def test_update_prices_with_no_matches_is_not_an_error(api_client, installed_shop, monkeypatch):
    _install_fake_api(monkeypatch, FakeAdminApi(_catalog_body([(1, "Silver Ring", [_variant_node(1, "", "5.00")])])))

    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP},
        json={"goldPrice": "2000"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["outcome"] == "nothing_to_do"
    assert payload["success"] is False
    assert (payload["attempted"], payload["succeeded"], payload["failed"]) == (0, 0, 0)
    assert payload["message"].startswith("No products matched")
    assert payload["details"] == []


def test_update_prices_with_empty_catalog(api_client, installed_shop, monkeypatch):
    _install_fake_api(monkeypatch, FakeAdminApi(_catalog_body([])))

    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP},
        json={"goldPrice": "2000"},
        headers=AUTH_HEADERS,
    )

    assert response.json()["message"] == "No products found to update"


def test_update_prices_aborts_on_catalog_failure(api_client, installed_shop, monkeypatch):
    fake = _install_fake_api(monkeypatch, FakeAdminApi({"errors": [{"message": "Throttled"}]}))

    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP},
        json={"goldPrice": "2000"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 502
    assert response.json() == {"error": "Failed to fetch products: Throttled", "success": False}
    assert fake.calls_matching("productVariantsBulkUpdate") == []


def test_update_prices_rejects_non_object_json(api_client, installed_shop):
    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP},
        json=[2000],
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_update_prices_get_is_rejected(api_client):
    response = api_client.get("/v1/prices/update")

    assert response.status_code == 405
    assert response.json() == {"error": "This endpoint only accepts POST requests", "success": False}


def test_get_catalog_lists_variants_with_stored_multipliers(api_client, installed_shop, monkeypatch):
    _install_fake_api(
        monkeypatch,
        FakeAdminApi(
            _catalog_body(
                [(5, "Iced Out Chain", [_variant_node(51, "", "10.00", multiplier="0.50"), _variant_node(52, "1", "12.00")])]
            )
        ),
    )

    response = api_client.get("/v1/catalog", params={"shop": SHOP}, headers=AUTH_HEADERS)

    assert response.status_code == 200
    payload = response.json()
    assert payload["shopDomain"] == SHOP
    product = payload["products"][0]
    assert product["legacyId"] == "5"
    assert product["variants"] == [
        {
            "variantGid": "gid://shopify/ProductVariant/51",
            "legacyId": "51",
            "title": "Default",
            "price": "10.00",
            "multiplier": "0.50",
        },
        {
            "variantGid": "gid://shopify/ProductVariant/52",
            "legacyId": "52",
            "title": "1",
            "price": "12.00",
            "multiplier": None,
        },
    ]


def test_set_variant_multiplier(api_client, installed_shop, monkeypatch):
    fake = _install_fake_api(monkeypatch, FakeAdminApi(_catalog_body([])))

    response = api_client.post(
        "/v1/variants/multiplier",
        params={"shop": SHOP},
        data={"variantId": "gid://shopify/ProductVariant/51", "multiplier": "0.5"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["metafield"] == {
        "id": "gid://shopify/Metafield/1",
        "ownerId": "gid://shopify/ProductVariant/51",
        "namespace": "gold",
        "key": "multiplier",
        "type": "number_decimal",
        "value": "0.5",
    }
    assert len(fake.calls_matching("metafieldsSet")) == 1


def test_set_variant_multiplier_accepts_legacy_id_json(api_client, installed_shop, monkeypatch):
    fake = _install_fake_api(monkeypatch, FakeAdminApi(_catalog_body([])))

    response = api_client.post(
        "/v1/variants/multiplier",
        params={"shop": SHOP},
        json={"variantLegacyId": "51", "multiplier": 1.25},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    assert fake.calls_matching("metafieldsSet")[0]["metafields"][0]["ownerId"] == "gid://shopify/ProductVariant/51"


def test_set_variant_multiplier_validation_and_user_errors(api_client, installed_shop, monkeypatch):
    fake = _install_fake_api(monkeypatch, FakeAdminApi(_catalog_body([])))

    missing = api_client.post(
        "/v1/variants/multiplier",
        params={"shop": SHOP},
        json={"variantId": "gid://shopify/ProductVariant/51"},
        headers=AUTH_HEADERS,
    )
    assert missing.status_code == 400
    assert missing.json() == {"error": "Missing variant ID or multiplier value", "success": False}

    negative = api_client.post(
        "/v1/variants/multiplier",
        params={"shop": SHOP},
        json={"variantId": "51", "multiplier": "-1"},
        headers=AUTH_HEADERS,
    )
    assert negative.status_code == 400
    assert fake.queries == []

    rejected = api_client.post(
        "/v1/variants/multiplier",
        params={"shop": SHOP},
        json={"variantId": "404", "multiplier": "1"},
        headers=AUTH_HEADERS,
    )
    assert rejected.status_code == 409
    assert rejected.json() == {"error": "metafieldsSet failed: Owner does not exist", "success": False}


def _signed_callback_params(*, shop: str, code: str, state: str) -> dict[str, str]:
    items = sorted([("code", code), ("shop", shop), ("state", state)])
    message = "&".join(f"{key}={value}" for key, value in items)
    digest = hmac.new(
        settings.SHOPIFY_APP_API_SECRET.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return {"shop": shop, "code": code, "state": state, "hmac": digest}


def test_auth_install_redirects_to_shopify(api_client, db_session):
    response = api_client.get("/auth/install", params={"shop": SHOP}, follow_redirects=False)

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.netloc == SHOP
    query = parse_qs(location.query)
    assert query["client_id"] == ["test_key"]
    assert query["redirect_uri"] == ["https://example.ngrok.app/auth/callback"]
    assert db_session.get(OAuthState, query["state"][0]) is not None


def test_auth_callback_stores_installation(api_client, db_session, monkeypatch):
    db_session.add(OAuthState(state="state_1", shop_domain=SHOP))
    db_session.commit()
    registered: list[str] = []

    async def fake_exchange_code_for_access_token(*, shop_domain: str, code: str):
        assert code == "oauth_code"
        return "shpat_admin", "read_products,write_products"

    async def fake_register_uninstall_webhook(*, shop_domain: str, access_token: str):
        registered.append(shop_domain)

    monkeypatch.setattr(
        main_module.shopify_api,
        "exchange_code_for_access_token",
        fake_exchange_code_for_access_token,
    )
    monkeypatch.setattr(main_module.shopify_api, "register_uninstall_webhook", fake_register_uninstall_webhook)

    response = api_client.get(
        "/auth/callback",
        params=_signed_callback_params(shop=SHOP, code="oauth_code", state="state_1"),
    )

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "shopDomain": SHOP,
        "scopes": ["read_products", "write_products"],
    }
    assert registered == [SHOP]
    db_session.expire_all()
    installation = db_session.scalars(select(ShopInstallation).where(ShopInstallation.shop_domain == SHOP)).first()
    assert installation is not None
    assert installation.admin_access_token == "shpat_admin"
    assert db_session.get(OAuthState, "state_1") is None


def test_auth_callback_rejects_bad_hmac(api_client, db_session):
    params = _signed_callback_params(shop=SHOP, code="oauth_code", state="state_1")
    params["hmac"] = "forged"

    response = api_client.get("/auth/callback", params=params)

    assert response.status_code == 400


def test_app_uninstalled_webhook_clears_token(api_client, installed_shop, db_session):
    body = b'{"id": 1}'
    digest = base64.b64encode(
        hmac.new(settings.SHOPIFY_APP_API_SECRET.encode("utf-8"), body, hashlib.sha256).digest()
    ).decode("utf-8")

    response = api_client.post(
        "/webhooks/app/uninstalled",
        content=body,
        headers={"x-shopify-hmac-sha256": digest, "x-shopify-shop-domain": SHOP},
    )

    assert response.status_code == 200
    db_session.expire_all()
    installation = db_session.scalars(select(ShopInstallation).where(ShopInstallation.shop_domain == SHOP)).first()
    assert installation.admin_access_token == ""
    assert installation.uninstalled_at is not None

    after = api_client.get("/v1/catalog", params={"shop": SHOP}, headers=AUTH_HEADERS)
    assert after.status_code == 401


def test_operator_routes_report_missing_shop_as_structured_error(api_client):
    for path, body in (("/v1/prices/update", {"goldPrice": "2000"}), ("/v1/variants/multiplier", {"variantId": "1"})):
        response = api_client.post(path, json=body, headers=AUTH_HEADERS)

        assert response.status_code == 400
        payload = response.json()
        assert payload["success"] is False
        assert payload["error"].startswith("Invalid request: query.shop")


def test_update_prices_rejects_unknown_strategy(api_client, installed_shop, monkeypatch):
    fake = _install_fake_api(monkeypatch, FakeAdminApi(_catalog_body([])))

    response = api_client.post(
        "/v1/prices/update",
        params={"shop": SHOP, "strategy": "weight"},
        json={"goldPrice": "2000"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 400
    payload = response.json()
    assert payload["success"] is False
    assert "query.strategy" in payload["error"]
    assert fake.queries == []
