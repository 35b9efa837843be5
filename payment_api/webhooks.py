from decimal import Decimal, InvalidOperation
from typing import Optional

import pydantic
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from payment_api.config import DeclaredStatus, MERCADO_PAGO_METHOD, MERCADO_PAGO_PROVIDER
from payment_api.errors import MissingPlayerIdentifier, PaymentAPIError, TransientInfraError, ValidationError
from payment_api.logging_config import get_logger
from payment_api.provider_client import MercadoPagoClient
from payment_api.reconciliation import ReconciliationEngine
from payment_api.schemas import PaymentEvent, ProviderNotification, ReconciliationResult

logger = get_logger(__name__)

provider_status_map = {
    "approved": DeclaredStatus.APPROVED,
    "pending": DeclaredStatus.PENDING,
    "rejected": DeclaredStatus.REJECTED,
    "cancelled": DeclaredStatus.CANCELLED,
}


def provider_external_id(payment_id) -> str:
    return f"MP_{payment_id}"


def resolve_player_identifier(payment: dict) -> str:
    """
    The player is read from ``metadata.username`` first, then ``external_reference``.
    """
    metadata = payment.get("metadata")
    if isinstance(metadata, dict) and metadata.get("username"):
        return str(metadata["username"])
    if payment.get("external_reference"):
        return str(payment["external_reference"])
    raise MissingPlayerIdentifier(f"payment {payment.get('id')} carries no player identifier")


def _payment_amount(payment: dict) -> Decimal:
    raw = payment.get("transaction_amount")
    if raw is None:
        return Decimal("0")
    try:
        # str() keeps the provider's decimal text instead of the float's binary value.
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValidationError(f"invalid transaction_amount {raw!r}") from exc


def payment_to_event(payment: dict) -> Optional[PaymentEvent]:
    """
    Normalize a provider payment record. Statuses the ledger does not track return None.
    """
    status = provider_status_map.get(payment.get("status"))
    if status is None:
        return None
    try:
        player = resolve_player_identifier(payment)
    except MissingPlayerIdentifier:
        if status in (DeclaredStatus.APPROVED, DeclaredStatus.PENDING):
            raise
        player = None
    metadata = {
        "mercadoPagoId": payment.get("id"),
        "status": payment.get("status"),
        "statusDetail": payment.get("status_detail"),
        "paymentType": payment.get("payment_type_id"),
        "approvedAt": payment.get("date_approved"),
    }
    try:
        return PaymentEvent(
            provider=MERCADO_PAGO_PROVIDER,
            external_id=provider_external_id(payment.get("id")),
            player=player,
            amount=_payment_amount(payment),
            status=status,
            payment_method=MERCADO_PAGO_METHOD,
            metadata={key: value for key, value in metadata.items() if value is not None},
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(f"invalid payment {payment.get('id')}: {exc.error_count()} errors") from exc


async def handle_provider_notification(
    notification: ProviderNotification,
    db: Session,
    client: MercadoPagoClient,
) -> Optional[ReconciliationResult]:
    """
    Fetch the payment behind a verified notification and reconcile it.

    Business outcomes are logged and swallowed so the provider gets its 200;
    TransientInfraError propagates so it retries.
    """
    if notification.type != "payment":
        logger.info("Ignoring notification type=%s data_id=%s", notification.type, notification.data.id)
        return None
    payment = await client.fetch_payment(notification.data.id)
    logger.info(
        "Payment details retrieved: id=%s status=%s amount=%s",
        payment.get("id"),
        payment.get("status"),
        payment.get("transaction_amount"),
    )
    try:
        event = payment_to_event(payment)
        if event is None:
            logger.info("Ignoring payment id=%s with untracked status=%s", payment.get("id"), payment.get("status"))
            return None
        return await run_in_threadpool(ReconciliationEngine(db).reconcile, event)
    except TransientInfraError:
        raise
    except PaymentAPIError as exc:
        logger.error("Payment id=%s not reconciled: %s", payment.get("id"), exc.message)
        return None
