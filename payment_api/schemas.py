from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Any

from payment_api.config import DeclaredStatus, TransactionStatus


class PaymentEvent(BaseModel):
    provider: str
    external_id: str = Field(min_length=1)
    player: Optional[str] = None
    amount: Decimal = Field(ge=0)
    status: DeclaredStatus
    payment_method: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ManualConfirmRequest(BaseModel):
    username: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    method: str = "MANUAL"
    metadata: dict[str, Any] = Field(default_factory=dict)


class PendingConfirmRequest(BaseModel):
    username: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    method: str = "MANUAL"
    externalId: str = Field(min_length=1)


class NotificationData(BaseModel):
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # The provider sends numeric ids for some topics.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ProviderNotification(BaseModel):
    type: Optional[str] = None
    action: Optional[str] = None
    data: NotificationData


class ReconciliationOutcome(str, Enum):
    CREATED = "created"
    ALREADY_PENDING = "already_pending"
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    REJECTED = "rejected"
    PLAYER_NOT_FOUND = "player_not_found"
    ERROR = "error"


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    external_id: str
    transaction_id: Optional[int] = None
    status: Optional[TransactionStatus] = None
    new_balance: Optional[Decimal] = None
    error_kind: Optional[str] = None
