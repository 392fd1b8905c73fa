import os
from typing import Any, Dict, List

from pydantic import ValidationError

from database import Store
from errors import NotConfiguredError
from schemas import EmailSettings, PaymentSettings, StoreInfo

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MINUTES = int(os.getenv("TOKEN_EXPIRE_MINUTES", 60 * 24))
CORS_ORIGINS: List[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", 15))


class ConfigProvider:
    """Business settings stored in the "store_settings" collection.

    Every accessor goes back to the store so rotated credentials take effect
    on the next call. Nothing here is cached.
    """

    def __init__(self, store: Store):
        self.store = store

    def _load(self, name: str) -> Dict[str, Any]:
        doc = self.store.get_setting(name) or {}
        return {k: v for k, v in doc.items() if k != "_id"}

    def payment_settings(self) -> PaymentSettings:
        try:
            return PaymentSettings(**self._load("payment_settings"))
        except ValidationError:
            raise NotConfiguredError("Payment settings")

    def email_settings(self) -> EmailSettings:
        try:
            return EmailSettings(**self._load("email_settings"))
        except ValidationError:
            raise NotConfiguredError("Email settings")

    def store_info(self) -> StoreInfo:
        try:
            return StoreInfo(**self._load("store_info"))
        except ValidationError:
            raise NotConfiguredError("Store info")
