from __future__ import annotations


class GoldPricerError(RuntimeError):
    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class GoldPriceValidationError(GoldPricerError):
    status_code = 400


class MultiplierValidationError(GoldPricerError):
    status_code = 400


class AuthenticationError(GoldPricerError):
    status_code = 401


class CatalogFetchError(GoldPricerError):
    status_code = 502


class MetafieldWriteError(GoldPricerError):
    status_code = 502


class InvalidShopDomainError(GoldPricerError):
    status_code = 400
