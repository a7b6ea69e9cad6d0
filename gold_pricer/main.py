from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Literal
from urllib.parse import urlencode
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from gold_pricer.auth import find_installation, get_admin_session, shopify_api
from gold_pricer.catalog import MULTIPLIER_KEY, MULTIPLIER_NAMESPACE, CatalogResult, fetch_catalog
from gold_pricer.config import settings
from gold_pricer.db import get_session, init_db
from gold_pricer.errors import (
    AuthenticationError,
    CatalogFetchError,
    GoldPricerError,
    GoldPriceValidationError,
    MultiplierValidationError,
)
from gold_pricer.matching import build_matching_strategy, normalize_variant_title, parse_multiplier
from gold_pricer.metafields import MULTIPLIER_TYPE, set_multiplier
from gold_pricer.models import OAuthState, ShopInstallation
from gold_pricer.pricing import PriceReconciler, ReconciliationSummary, validate_gold_price
from gold_pricer.schemas import (
    CatalogProduct,
    CatalogResponse,
    CatalogVariant,
    ErrorResponse,
    MultiplierMetafield,
    SetMultiplierResponse,
    UpdatePricesResponse,
    UpdateResultItem,
)
from gold_pricer.security import normalize_shop_domain, verify_oauth_hmac, verify_webhook_hmac
from gold_pricer.shopify_api import AdminSession, ShopifyApiError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="Gold Price Sync",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )

    @app.exception_handler(GoldPricerError)
    async def gold_pricer_error_handler(_request: Request, exc: GoldPricerError) -> ORJSONResponse:
        logger.warning("%s: %s", exc.__class__.__name__, exc)
        return _error_response(exc.status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(_request: Request, exc: RequestValidationError) -> ORJSONResponse:
        message = _describe_validation_errors(exc.errors())
        logger.warning("Rejected request: %s", message)
        return _error_response(status.HTTP_400_BAD_REQUEST, message)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return _error_response(500, "Server error: internal error")

    @app.get("/health")
    def health() -> dict[str, bool]:
        return {"ok": True}

    app.add_api_route("/auth/install", auth_install, methods=["GET"])
    app.add_api_route("/auth/callback", auth_callback, methods=["GET"])
    app.add_api_route("/webhooks/app/uninstalled", app_uninstalled_webhook, methods=["POST"])
    app.add_api_route("/v1/catalog", get_catalog, methods=["GET"], response_model=CatalogResponse)
    app.add_api_route(
        "/v1/prices/update",
        update_prices,
        methods=["POST"],
        response_model=UpdatePricesResponse,
    )
    app.add_api_route("/v1/prices/update", update_prices_wrong_method, methods=["GET"])
    app.add_api_route(
        "/v1/variants/multiplier",
        set_variant_multiplier,
        methods=["POST"],
        response_model=SetMultiplierResponse,
    )
    return app


def _error_response(status_code: int, message: str) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def _describe_validation_errors(errors: Sequence[Any]) -> str:
    details = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid value')}"
        for error in errors
    ]
    if not details:
        return "Invalid request"
    return f"Invalid request: {'; '.join(details)}"


def _build_shopify_oauth_url(*, shop_domain: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "scope": settings.SHOPIFY_APP_SCOPES,
            "redirect_uri": f"{settings.app_base_url}/auth/callback",
            "state": state,
        }
    )
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


def auth_install(shop: str, session: Session = Depends(get_session)):
    shop_domain = normalize_shop_domain(shop)
    state = uuid4().hex
    session.add(OAuthState(state=state, shop_domain=shop_domain))
    session.commit()
    return RedirectResponse(url=_build_shopify_oauth_url(shop_domain=shop_domain, state=state), status_code=302)


async def auth_callback(request: Request, session: Session = Depends(get_session)):
    if not verify_oauth_hmac(request.query_params.multi_items()):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth HMAC")

    shop = request.query_params.get("shop")
    code = request.query_params.get("code")
    state_value = request.query_params.get("state")
    if not shop or not code or not state_value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth callback params: shop, code, state",
        )

    shop_domain = normalize_shop_domain(shop)
    oauth_state = session.get(OAuthState, state_value)
    if not oauth_state or oauth_state.shop_domain != shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")

    try:
        access_token, scopes_csv = await shopify_api.exchange_code_for_access_token(
            shop_domain=shop_domain,
            code=code,
        )
        installation = find_installation(session, shop_domain)
        if installation is None:
            installation = ShopInstallation(
                shop_domain=shop_domain,
                admin_access_token=access_token,
                scopes=scopes_csv,
            )
            session.add(installation)
        else:
            installation.admin_access_token = access_token
            installation.scopes = scopes_csv
            installation.uninstalled_at = None
            installation.updated_at = datetime.now(timezone.utc)

        await shopify_api.register_uninstall_webhook(shop_domain=shop_domain, access_token=access_token)
        session.delete(oauth_state)
        session.commit()
    except ShopifyApiError as exc:
        session.rollback()
        logger.error("OAuth callback failed for %s: %s", shop_domain, exc)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    logger.info("Installed app on %s", shop_domain)
    return {
        "ok": True,
        "shopDomain": shop_domain,
        "scopes": [scope.strip() for scope in scopes_csv.split(",") if scope.strip()],
    }


async def app_uninstalled_webhook(request: Request, session: Session = Depends(get_session)):
    body = await request.body()
    if not verify_webhook_hmac(body=body, supplied_hmac=request.headers.get("x-shopify-hmac-sha256")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook HMAC")

    shop_header = request.headers.get("x-shopify-shop-domain")
    if not shop_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing x-shopify-shop-domain header",
        )
    shop_domain = normalize_shop_domain(shop_header)

    installation = find_installation(session, shop_domain)
    if installation:
        installation.uninstalled_at = datetime.now(timezone.utc)
        installation.admin_access_token = ""
        installation.updated_at = datetime.now(timezone.utc)
        session.commit()
        logger.info("Cleared installation for %s", shop_domain)

    return {"received": True}


async def _read_payload(request: Request, *, error_cls: type[GoldPricerError]) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError as exc:
            raise error_cls(f"Invalid request body: {exc}") from exc
        if not isinstance(payload, dict):
            raise error_cls("Invalid request body: expected a JSON object")
        return payload
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _require_catalog(catalog: CatalogResult) -> CatalogResult:
    if catalog.auth_failed:
        raise AuthenticationError(f"Authentication error: {catalog.error}")
    if not catalog.ok:
        raise CatalogFetchError(catalog.error or "Failed to fetch products")
    return catalog


def _legacy_id(gid: str) -> str:
    return gid.rsplit("/", 1)[-1]


async def get_catalog(
    include_metafields: bool = Query(default=True, alias="includeMetafields"),
    admin_session: AdminSession = Depends(get_admin_session),
) -> CatalogResponse:
    catalog = _require_catalog(
        await fetch_catalog(
            admin_session,
            include_metafields=include_metafields,
            product_limit=settings.CATALOG_PRODUCT_PAGE_SIZE,
            variant_limit=settings.CATALOG_VARIANT_PAGE_SIZE,
            max_pages=settings.CATALOG_MAX_PAGES,
        )
    )
    products = []
    for product in catalog.products:
        variants = []
        for variant in product.variants:
            stored = variant.metafield(MULTIPLIER_NAMESPACE, MULTIPLIER_KEY)
            multiplier = parse_multiplier(stored.value) if stored else None
            variants.append(
                CatalogVariant(
                    variantGid=variant.id,
                    legacyId=_legacy_id(variant.id),
                    title=normalize_variant_title(variant.title),
                    price=variant.price,
                    multiplier=format(multiplier, "f") if multiplier is not None else None,
                )
            )
        products.append(
            CatalogProduct(
                productGid=product.id,
                legacyId=_legacy_id(product.id),
                title=product.title,
                variants=variants,
            )
        )
    return CatalogResponse(shopDomain=admin_session.shop_domain, products=products)


def _serialize_summary(summary: ReconciliationSummary, *, strategy: str) -> UpdatePricesResponse:
    return UpdatePricesResponse(
        message=summary.message,
        success=summary.success,
        outcome=summary.outcome,
        strategy=strategy,
        goldPrice=format(summary.gold_price, "f"),
        attempted=summary.attempted,
        succeeded=summary.succeeded,
        failed=summary.failed,
        details=[
            UpdateResultItem(
                variantId=result.variant_id,
                title=result.title,
                multiplier=format(result.multiplier, "f"),
                oldPrice=result.old_price,
                targetPrice=result.target_price,
                newPrice=result.new_price,
                success=result.success,
                error=result.error,
            )
            for result in summary.results
        ],
    )


async def update_prices(
    request: Request,
    strategy: Literal["name", "metafield"] | None = Query(default=None),
    admin_session: AdminSession = Depends(get_admin_session),
) -> UpdatePricesResponse:
    payload = await _read_payload(request, error_cls=GoldPriceValidationError)
    gold_price = validate_gold_price(payload.get("goldPrice"))
    logger.info("Processing gold price %s for %s", gold_price, admin_session.shop_domain)

    matcher = build_matching_strategy(
        strategy or settings.GOLD_MATCHING_STRATEGY,
        rules_path=settings.GOLD_MULTIPLIER_RULES_PATH,
    )
    catalog = _require_catalog(
        await fetch_catalog(
            admin_session,
            include_metafields=matcher.name == "metafield",
            product_limit=settings.CATALOG_PRODUCT_PAGE_SIZE,
            variant_limit=settings.CATALOG_VARIANT_PAGE_SIZE,
            max_pages=settings.CATALOG_MAX_PAGES,
        )
    )
    logger.info("Products fetched: %d", len(catalog.products))

    no_match_message = matcher.no_match_message if catalog.products else "No products found to update"
    reconciler = PriceReconciler(admin_session, max_concurrency=settings.PRICE_UPDATE_MAX_CONCURRENCY)
    summary = await reconciler.reconcile(
        gold_price,
        matcher.match(catalog.products),
        no_match_message=no_match_message,
    )
    return _serialize_summary(summary, strategy=matcher.name)


def update_prices_wrong_method() -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        content={"error": "This endpoint only accepts POST requests", "success": False},
    )


async def set_variant_multiplier(
    request: Request,
    admin_session: AdminSession = Depends(get_admin_session),
) -> SetMultiplierResponse:
    payload = await _read_payload(request, error_cls=MultiplierValidationError)
    variant_id = payload.get("variantId") or payload.get("variantLegacyId")
    if variant_id is None or payload.get("multiplier") is None:
        raise MultiplierValidationError("Missing variant ID or multiplier value")

    result = await set_multiplier(admin_session, variant_id, payload.get("multiplier"))
    return SetMultiplierResponse(
        message=f"Set {MULTIPLIER_NAMESPACE}.{MULTIPLIER_KEY} to {result.value} for {result.variant_id}",
        metafield=MultiplierMetafield(
            id=result.metafield_id,
            ownerId=result.variant_id,
            namespace=MULTIPLIER_NAMESPACE,
            key=MULTIPLIER_KEY,
            type=MULTIPLIER_TYPE,
            value=result.value,
        ),
    )


app = create_app()
