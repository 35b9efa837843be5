from decimal import Decimal
from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    service_name: str = "Payment API"
    service_version: str = "1.0.0"
    db_url: str = "sqlite:///./payments.db"
    db_pool_timeout_seconds: float = 10.0
    db_connect_timeout_seconds: int = 10
    custom_payment_secret: Optional[str] = None
    mp_webhook_secret: Optional[str] = None
    mp_access_token: Optional[str] = None
    mp_api_base_url: AnyHttpUrl = "https://api.mercadopago.com"
    provider_timeout_seconds: float = 10.0
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5
    bearer_token: Optional[str] = None
    enable_signature_helper: bool = False
    log_level: str = "INFO"

settings = Settings()

class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class TransactionType(str, Enum):
    VIP_PURCHASE = "VIP_PURCHASE"

class DeclaredStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    MANUAL = "manual"

MERCADO_PAGO_PROVIDER = "mercadopago"
MERCADO_PAGO_METHOD = "MERCADO_PAGO_PIX"
CUSTOM_PROVIDER = "custom"

MONEY_QUANT = Decimal("0.01")

# Allowed ledger moves; terminal states map to an empty set.
allowed_transitions = {
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.FAILED: set(),
}
