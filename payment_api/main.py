import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from payment_api import models
from payment_api.config import CUSTOM_PROVIDER, DeclaredStatus, TransactionStatus, settings
from payment_api.database import engine, get_db
from payment_api.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError, register_exception_handlers
from payment_api.helpers import format_money, new_custom_external_id, parse_body, serialize_transaction
from payment_api.ledger import TransactionLedger
from payment_api.logging_config import get_logger
from payment_api.provider_client import MercadoPagoClient, get_provider_client, provider_client
from payment_api.reconciliation import ReconciliationEngine
from payment_api.schemas import (
    ManualConfirmRequest,
    PaymentEvent,
    PendingConfirmRequest,
    ProviderNotification,
    ReconciliationOutcome,
    ReconciliationResult,
)
from payment_api.security import (
    canonical_json,
    compute_signature,
    require_bearer_token,
    verify_manifest_signature,
    verify_payload_signature,
)
from payment_api.webhooks import handle_provider_notification


logger = get_logger(__name__)

models.Base.metadata.create_all(bind=engine)
app = FastAPI(title=settings.service_name)
register_exception_handlers(app)

STARTED_AT = time.monotonic()


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Closing provider client")
    await provider_client.aclose()


def _raise_for_result(result: ReconciliationResult) -> None:
    if result.outcome == ReconciliationOutcome.PLAYER_NOT_FOUND:
        raise NotFoundError("Player not found")
    if result.outcome == ReconciliationOutcome.ERROR:
        raise ConflictError(f"Transaction {result.external_id} is already {result.status.value}")


@app.get("/")
async def root():
    return {
        "service": settings.service_name,
        "version": settings.service_version,
        "status": "running",
        "endpoints": {
            "health": "/api/health",
            "mercadoPago": "/api/webhooks/mercadopago",
            "custom": "/api/webhooks/custom",
        },
    }


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "timestamp": timestamp, "database": "disconnected"},
        )
    return {
        "status": "healthy",
        "timestamp": timestamp,
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "database": "connected",
        "version": settings.service_version,
    }


@app.post("/api/webhooks/mercadopago")
async def mercadopago_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client: MercadoPagoClient = Depends(get_provider_client),
):
    raw_body = await request.body()
    logger.info("Mercado Pago webhook received request_id=%s", request.headers.get("x-request-id"))
    if not verify_manifest_signature(raw_body, request.headers, settings.mp_webhook_secret):
        logger.warning("Invalid Mercado Pago webhook signature")
        raise AuthenticationError("Invalid signature")
    try:
        notification = parse_body(raw_body, ProviderNotification)
    except ValidationError as exc:
        logger.error("Unusable Mercado Pago notification: %s", exc.message)
        return {"received": True}
    await handle_provider_notification(notification, db, client)
    # Acknowledge every business outcome so the provider does not retry.
    return {"received": True}


@app.post("/api/webhooks/custom/confirm")
async def confirm_custom_payment(request: Request, db: Session = Depends(get_db)):
    raw_body = await request.body()
    logger.info("Custom payment webhook received")
    if not verify_payload_signature(raw_body, request.headers, settings.custom_payment_secret):
        logger.warning("Invalid custom payment signature")
        raise AuthenticationError("Invalid signature")
    payload = parse_body(raw_body, ManualConfirmRequest)
    event = PaymentEvent(
        provider=CUSTOM_PROVIDER,
        external_id=new_custom_external_id(),
        player=payload.username,
        amount=payload.amount,
        status=DeclaredStatus.MANUAL,
        payment_method=payload.method,
        metadata={
            **payload.metadata,
            "confirmedAt": datetime.now(timezone.utc).isoformat(),
            "source": "custom_webhook",
        },
    )
    result = await run_in_threadpool(ReconciliationEngine(db).reconcile, event)
    _raise_for_result(result)
    logger.info(
        "Custom payment processed player=%s amount=%s method=%s transaction_id=%s",
        payload.username,
        payload.amount,
        payload.method,
        result.transaction_id,
    )
    return {
        "success": True,
        "message": "Payment confirmed",
        "data": {
            "player": payload.username,
            "amount": format_money(payload.amount),
            "newBalance": format_money(result.new_balance),
            "transactionId": result.transaction_id,
            "externalId": result.external_id,
        },
    }


@app.post("/api/webhooks/custom/pending")
async def create_pending_payment(request: Request, db: Session = Depends(get_db)):
    raw_body = await request.body()
    logger.info("Custom pending payment received")
    if not verify_payload_signature(raw_body, request.headers, settings.custom_payment_secret):
        logger.warning("Invalid custom payment signature")
        raise AuthenticationError("Invalid signature")
    payload = parse_body(raw_body, PendingConfirmRequest)
    event = PaymentEvent(
        provider=CUSTOM_PROVIDER,
        external_id=payload.externalId,
        player=payload.username,
        amount=payload.amount,
        status=DeclaredStatus.PENDING,
        payment_method=payload.method,
    )
    result = await run_in_threadpool(ReconciliationEngine(db).reconcile, event)
    _raise_for_result(result)
    created = result.outcome == ReconciliationOutcome.CREATED
    logger.info(
        "Pending payment %s player=%s amount=%s external_id=%s",
        "created" if created else "already recorded",
        payload.username,
        payload.amount,
        payload.externalId,
    )
    return {
        "success": True,
        "message": "Pending payment created" if created else "Pending payment already recorded",
        "data": {
            "player": payload.username,
            "amount": format_money(payload.amount),
            "externalId": payload.externalId,
            "status": result.status.value,
        },
    }


@app.get("/api/webhooks/custom/generate-signature")
async def generate_signature(username: str | None = None, amount: str | None = None, method: str = "MANUAL"):
    """
    Developer helper producing a signed body for manual confirmations.
    """
    if not settings.enable_signature_helper or not settings.custom_payment_secret:
        raise NotFoundError("Endpoint not found")
    if not username or not amount:
        raise ValidationError("Missing required parameters: username, amount")
    try:
        value = Decimal(amount)
    except InvalidOperation as exc:
        raise ValidationError("amount must be a decimal number") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("amount must be greater than zero")
    body = canonical_json({"username": username, "amount": str(value), "method": method})
    signature = compute_signature(body, settings.custom_payment_secret)
    return {
        "body": body,
        "signature": signature,
        "headers": {
            "Content-Type": "application/json",
            "X-Payment-Signature": signature,
        },
    }


@app.get("/api/admin/transactions")
def list_transactions(
    status: TransactionStatus | None = None,
    limit: int = Query(100, ge=1, le=500),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    records = TransactionLedger(db).list_transactions(status=status, limit=limit)
    return [serialize_transaction(r) for r in records]


@app.post("/api/admin/recover")
def recover_balances(
    limit: int = Query(100, ge=1, le=1000),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    """
    Apply balance effects left behind by a crash between completing a transaction and crediting the player.
    """
    applied = ReconciliationEngine(db).recover_unapplied(limit=limit)
    return {"applied": applied}
