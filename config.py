"""
Application settings, read once from the environment when the app is built.
"""

from functools import lru_cache
from typing import Optional

from fastapi import Request
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "development"
    port: int = 8000
    log_level: str = "INFO"

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "shop"

    jwt_secret: str = "devsecret"
    jwt_expires_in_days: int = 7
    jwt_cookie_expires_in_days: int = 7
    bcrypt_rounds: int = 12

    cors_origin: str = "http://localhost:3000"

    redis_url: Optional[str] = None
    products_cache_ttl: int = 300
    categories_cache_ttl: int = 3600

    zarinpal_merchant_id: str = "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"
    zarinpal_sandbox: Optional[bool] = None
    zarinpal_callback_url: str = "http://localhost:8000/api/payments/verify"
    payment_success_url: str = "/views/payment/success"
    payment_failure_url: str = "/views/payment/failed"
    transaction_expiry_minutes: int = 30

    smsir_api_key: str = ""
    smsir_line_number: str = ""
    smsir_base_url: str = "https://api.sms.ir/v1"
    smsir_verify_template_id: int = 100000
    verification_code_ttl_seconds: int = 120

    http_timeout_seconds: float = 5.0

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def zarinpal_host(self) -> str:
        sandbox = self.zarinpal_sandbox
        if sandbox is None:
            sandbox = not self.is_production
        return "https://sandbox.zarinpal.com" if sandbox else "https://www.zarinpal.com"

    @property
    def zarinpal_request_url(self) -> str:
        return f"{self.zarinpal_host}/pg/rest/WebGate/PaymentRequest.json"

    @property
    def zarinpal_verify_url(self) -> str:
        return f"{self.zarinpal_host}/pg/rest/WebGate/PaymentVerification.json"

    @property
    def zarinpal_startpay_url(self) -> str:
        return f"{self.zarinpal_host}/pg/StartPay/"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
