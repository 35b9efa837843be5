import asyncio
from decimal import Decimal

import pytest

from payment_api.config import DeclaredStatus
from payment_api.errors import MissingPlayerIdentifier, TransientInfraError, ValidationError
from payment_api.schemas import ProviderNotification, ReconciliationOutcome
from payment_api.webhooks import handle_provider_notification, payment_to_event, resolve_player_identifier


def _payment(**overrides) -> dict:
    payment = {
        "id": 555,
        "status": "approved",
        "status_detail": "accredited",
        "transaction_amount": 50.0,
        "payment_type_id": "bank_transfer",
        "date_approved": "2024-01-10T12:00:00.000-03:00",
        "metadata": {"username": "Player123"},
        "external_reference": "fallback-user",
    }
    payment.update(overrides)
    return payment


def test_player_identifier_prefers_metadata_username():
    assert resolve_player_identifier(_payment()) == "Player123"


def test_player_identifier_falls_back_to_external_reference():
    assert resolve_player_identifier(_payment(metadata={})) == "fallback-user"
    assert resolve_player_identifier(_payment(metadata=None)) == "fallback-user"


def test_player_identifier_missing_is_explicit():
    with pytest.raises(MissingPlayerIdentifier):
        resolve_player_identifier(_payment(metadata={}, external_reference=None))


def test_payment_to_event_normalizes_provider_record():
    event = payment_to_event(_payment())

    assert event.external_id == "MP_555"
    assert event.player == "Player123"
    assert event.amount == Decimal("50.0")
    assert event.status == DeclaredStatus.APPROVED
    assert event.payment_method == "MERCADO_PAGO_PIX"
    assert event.metadata["mercadoPagoId"] == 555
    assert event.metadata["paymentType"] == "bank_transfer"


def test_payment_to_event_keeps_decimal_text_of_amount():
    event = payment_to_event(_payment(transaction_amount=0.1))
    assert event.amount == Decimal("0.1")


def test_payment_to_event_skips_untracked_statuses():
    assert payment_to_event(_payment(status="in_mediation")) is None


def test_payment_to_event_requires_player_for_credits():
    with pytest.raises(MissingPlayerIdentifier):
        payment_to_event(_payment(status="pending", metadata={}, external_reference=None))


def test_payment_to_event_allows_rejection_without_player():
    event = payment_to_event(_payment(status="rejected", metadata={}, external_reference=None))
    assert event.player is None
    assert event.status == DeclaredStatus.REJECTED


def test_payment_to_event_rejects_negative_amount():
    with pytest.raises(ValidationError):
        payment_to_event(_payment(transaction_amount=-5))


def test_non_payment_notifications_are_ignored(db, provider):
    notification = ProviderNotification(type="merchant_order", data={"id": "1"})

    assert asyncio.run(handle_provider_notification(notification, db, provider)) is None
    assert provider.calls == []


def test_notification_reconciles_fetched_payment(db, provider, make_player, balance_of):
    make_player(balance="0.00")
    provider.payments["555"] = _payment()
    notification = ProviderNotification(type="payment", data={"id": 555})

    result = asyncio.run(handle_provider_notification(notification, db, provider))

    assert provider.calls == ["555"]
    assert result.outcome == ReconciliationOutcome.CREATED
    assert balance_of() == Decimal("50.00")


def test_notification_swallows_business_failures(db, provider, stored_transactions):
    provider.payments["555"] = _payment(metadata={}, external_reference=None)
    notification = ProviderNotification(type="payment", data={"id": "555"})

    assert asyncio.run(handle_provider_notification(notification, db, provider)) is None
    assert stored_transactions() == []


def test_notification_propagates_provider_outage(db, provider):
    provider.error = TransientInfraError("provider timeout")
    notification = ProviderNotification(type="payment", data={"id": "555"})

    with pytest.raises(TransientInfraError):
        asyncio.run(handle_provider_notification(notification, db, provider))


def test_rejected_payment_without_amount_stores_nothing(db, provider, make_player, stored_transactions):
    make_player()
    payment = _payment(status="rejected")
    del payment["transaction_amount"]
    provider.payments["555"] = payment
    notification = ProviderNotification(type="payment", data={"id": "555"})

    assert asyncio.run(handle_provider_notification(notification, db, provider)) is None
    assert stored_transactions() == []
