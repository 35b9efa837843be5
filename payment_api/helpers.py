import secrets
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel

from payment_api.config import MONEY_QUANT
from payment_api.errors import ValidationError
from payment_api.models import Transaction

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_body(raw_body: bytes, model: Type[ModelT]) -> ModelT:
    """
    Validate an already-authenticated raw body, mapping any failure onto a 400.
    """
    try:
        return model.model_validate_json(raw_body)
    except pydantic.ValidationError as exc:
        missing = [".".join(str(part) for part in err["loc"]) for err in exc.errors() if err["type"] == "missing"]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}") from exc
        fields = sorted({".".join(str(part) for part in err["loc"]) or "body" for err in exc.errors()})
        raise ValidationError(f"Invalid fields: {', '.join(fields)}") from exc


def format_money(amount: Optional[Decimal]) -> Optional[str]:
    # Fixed-point text; JSON floats would lose cents.
    if amount is None:
        return None
    return str(amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP))


def new_custom_external_id() -> str:
    return f"CUSTOM_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def serialize_transaction(record: Transaction) -> dict:
    return {
        "id": record.id,
        "playerUuid": record.player_uuid,
        "amount": format_money(record.amount),
        "type": record.type,
        "status": record.status,
        "description": record.description,
        "paymentMethod": record.payment_method,
        "externalId": record.external_id,
        "balanceApplied": record.balance_applied,
        "metadata": record.extra_metadata,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
    }
