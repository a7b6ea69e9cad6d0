from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    error: str
    success: Literal[False] = False


class UpdateResultItem(BaseModel):
    variantId: str
    title: str
    multiplier: str
    oldPrice: str
    targetPrice: str | None = None
    newPrice: str | None = None
    success: bool
    error: str | None = None


class UpdatePricesResponse(BaseModel):
    message: str
    success: bool
    outcome: Literal["nothing_to_do", "success", "partial", "failure"]
    strategy: Literal["name", "metafield"]
    goldPrice: str
    attempted: int
    succeeded: int
    failed: int
    details: list[UpdateResultItem]


class MultiplierMetafield(BaseModel):
    id: str | None = None
    ownerId: str
    namespace: str
    key: str
    type: str
    value: str


class SetMultiplierResponse(BaseModel):
    success: Literal[True] = True
    message: str
    metafield: MultiplierMetafield


class CatalogVariant(BaseModel):
    variantGid: str
    legacyId: str
    title: str
    price: str
    multiplier: str | None = None


class CatalogProduct(BaseModel):
    productGid: str
    legacyId: str
    title: str
    variants: list[CatalogVariant]


class CatalogResponse(BaseModel):
    shopDomain: str
    products: list[CatalogProduct]
