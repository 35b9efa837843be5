from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple

from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from payment_api.balances import BalanceStore
from payment_api.config import MONEY_QUANT, DeclaredStatus, TransactionStatus
from payment_api.errors import TransactionAlreadyExists, TransientInfraError, ValidationError
from payment_api.ledger import TransactionLedger
from payment_api.logging_config import get_logger
from payment_api.models import Player, Transaction
from payment_api.schemas import PaymentEvent, ReconciliationOutcome, ReconciliationResult


logger = get_logger(__name__)

# A racing sibling can flip the row at most once before it is terminal.
MAX_SETTLE_ATTEMPTS = 3
STORAGE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


class ReconciliationEngine:
    """
    Applies a verified PaymentEvent to the ledger exactly once per external id.

    Correctness rests on storage-level guarantees only: the unique external id, the
    conditional status UPDATE and the balance_applied claim. No in-process locking.
    """

    def __init__(self, db: Session, ledger: TransactionLedger | None = None, balances: BalanceStore | None = None):
        self.db = db
        self.ledger = ledger or TransactionLedger(db)
        self.balances = balances or BalanceStore(db)

    def reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        logger.info(
            "Reconciling event provider=%s external_id=%s status=%s player=%s amount=%s",
            event.provider,
            event.external_id,
            event.status.value,
            event.player,
            event.amount,
        )
        try:
            if event.status in (DeclaredStatus.APPROVED, DeclaredStatus.MANUAL):
                result = self._complete(event)
            elif event.status == DeclaredStatus.PENDING:
                result = self._record_pending(event)
            else:
                result = self._fail(event)
        except STORAGE_ERRORS as exc:
            self.db.rollback()
            logger.error(
                "Storage failure while reconciling external_id=%s status=%s",
                event.external_id,
                event.status.value,
                exc_info=True,
            )
            raise TransientInfraError("storage unavailable") from exc
        logger.info(
            "Reconciled external_id=%s outcome=%s transaction_id=%s",
            result.external_id,
            result.outcome.value,
            result.transaction_id,
        )
        return result

    def recover_unapplied(self, limit: int = 100) -> int:
        """
        Apply the balance effect of COMPLETED rows left with balance_applied = false
        by a crash between the two writes. Returns how many effects were applied.
        """
        applied = 0
        try:
            pending_effects = self.ledger.list_unapplied(limit)
            for transaction in pending_effects:
                was_applied, _ = self._apply_balance_effect(transaction)
                if was_applied:
                    applied += 1
        except STORAGE_ERRORS as exc:
            self.db.rollback()
            logger.error("Storage failure during recovery sweep after %s effects", applied, exc_info=True)
            raise TransientInfraError("storage unavailable") from exc
        logger.info("Recovery sweep applied %s of %s pending balance effects", applied, len(pending_effects))
        return applied

    def _complete(self, event: PaymentEvent) -> ReconciliationResult:
        player = self._find_player(event)
        if player is None:
            return self._player_not_found(event)
        amount = self._purchase_amount(event)
        for _ in range(MAX_SETTLE_ATTEMPTS):
            if self.ledger.transition(
                event.external_id,
                TransactionStatus.PENDING,
                TransactionStatus.COMPLETED,
                metadata=event.metadata,
            ):
                self.db.commit()
                transaction = self.ledger.find_by_external_id(event.external_id)
                _, new_balance = self._apply_balance_effect(transaction)
                return self._result(ReconciliationOutcome.COMPLETED, event, transaction, new_balance=new_balance)
            try:
                transaction = self.ledger.create(
                    player_uuid=player.uuid,
                    amount=amount,
                    status=TransactionStatus.COMPLETED,
                    external_id=event.external_id,
                    payment_method=event.payment_method,
                    description=self._describe(event),
                    metadata=event.metadata,
                )
                self.db.commit()
            except TransactionAlreadyExists:
                existing = self.ledger.find_by_external_id(event.external_id)
                if existing.status == TransactionStatus.COMPLETED.value:
                    return self._replayed_completion(event, existing)
                if existing.status == TransactionStatus.FAILED.value:
                    return self._conflict(event, existing)
                # A pending sibling landed between our UPDATE and INSERT.
                continue
            _, new_balance = self._apply_balance_effect(transaction)
            return self._result(ReconciliationOutcome.CREATED, event, transaction, new_balance=new_balance)
        raise TransientInfraError(f"could not settle {event.external_id}")

    def _record_pending(self, event: PaymentEvent) -> ReconciliationResult:
        player = self._find_player(event)
        if player is None:
            return self._player_not_found(event)
        amount = self._purchase_amount(event)
        try:
            transaction = self.ledger.create(
                player_uuid=player.uuid,
                amount=amount,
                status=TransactionStatus.PENDING,
                external_id=event.external_id,
                payment_method=event.payment_method,
                description=self._describe(event),
                metadata={**event.metadata, "pending": True},
            )
            self.db.commit()
        except TransactionAlreadyExists:
            return self._existing_result(event, self.ledger.find_by_external_id(event.external_id))
        return self._result(ReconciliationOutcome.CREATED, event, transaction)

    def _fail(self, event: PaymentEvent) -> ReconciliationResult:
        for _ in range(MAX_SETTLE_ATTEMPTS):
            if self.ledger.transition(
                event.external_id,
                TransactionStatus.PENDING,
                TransactionStatus.FAILED,
                metadata=event.metadata,
            ):
                self.db.commit()
                transaction = self.ledger.find_by_external_id(event.external_id)
                return self._result(ReconciliationOutcome.REJECTED, event, transaction)
            existing = self.ledger.find_by_external_id(event.external_id)
            if existing is None:
                player = self._find_player(event)
                if player is None:
                    logger.info("Rejection for unknown payment external_id=%s, nothing to fail", event.external_id)
                    return ReconciliationResult(outcome=ReconciliationOutcome.REJECTED, external_id=event.external_id)
                # Record the failure so a late approval for the same id surfaces as a conflict.
                try:
                    transaction = self.ledger.create(
                        player_uuid=player.uuid,
                        amount=self._purchase_amount(event),
                        status=TransactionStatus.FAILED,
                        external_id=event.external_id,
                        payment_method=event.payment_method,
                        description=self._describe(event),
                        metadata=event.metadata,
                    )
                    self.db.commit()
                except TransactionAlreadyExists:
                    continue
                return self._result(ReconciliationOutcome.REJECTED, event, transaction)
            if existing.status == TransactionStatus.FAILED.value:
                return self._result(ReconciliationOutcome.REJECTED, event, existing)
            if existing.status == TransactionStatus.COMPLETED.value:
                return self._conflict(event, existing)
        raise TransientInfraError(f"could not settle {event.external_id}")

    def _apply_balance_effect(self, transaction: Transaction) -> Tuple[bool, Decimal]:
        """
        Claim the row's balance effect and increment the player in one DB transaction.
        Losing the claim means the effect is already applied.
        """
        transaction_id = transaction.id
        player_uuid = transaction.player_uuid
        amount = transaction.amount
        if not self.ledger.mark_balance_applied(transaction_id):
            self.db.rollback()
            logger.info("Balance effect already applied transaction_id=%s", transaction_id)
            return False, self.balances.get_balance(player_uuid)
        new_balance = self.balances.increment(player_uuid, amount)
        self.db.commit()
        logger.info(
            "Balance incremented transaction_id=%s player_uuid=%s amount=%s new_balance=%s",
            transaction_id,
            player_uuid,
            amount,
            new_balance,
        )
        return True, new_balance

    def _replayed_completion(self, event: PaymentEvent, existing: Transaction) -> ReconciliationResult:
        # A delivery interrupted between the two writes left the credit unclaimed; finish it here.
        applied, new_balance = self._apply_balance_effect(existing)
        if applied:
            logger.warning(
                "Finished interrupted balance effect external_id=%s transaction_id=%s",
                event.external_id,
                existing.id,
            )
            return self._result(ReconciliationOutcome.COMPLETED, event, existing, new_balance=new_balance)
        return self._result(ReconciliationOutcome.ALREADY_COMPLETED, event, existing)

    def _find_player(self, event: PaymentEvent) -> Player | None:
        if not event.player:
            return None
        return self.balances.find_player(event.player)

    def _player_not_found(self, event: PaymentEvent) -> ReconciliationResult:
        logger.error("Player not found: player=%s external_id=%s", event.player, event.external_id)
        return ReconciliationResult(outcome=ReconciliationOutcome.PLAYER_NOT_FOUND, external_id=event.external_id)

    def _conflict(self, event: PaymentEvent, existing: Transaction) -> ReconciliationResult:
        logger.error(
            "Terminal-state conflict: external_id=%s stored_status=%s incoming_status=%s transaction_id=%s",
            event.external_id,
            existing.status,
            event.status.value,
            existing.id,
        )
        return self._result(ReconciliationOutcome.ERROR, event, existing, error_kind="conflict")

    def _existing_result(self, event: PaymentEvent, existing: Transaction) -> ReconciliationResult:
        outcome = {
            TransactionStatus.PENDING.value: ReconciliationOutcome.ALREADY_PENDING,
            TransactionStatus.COMPLETED.value: ReconciliationOutcome.ALREADY_COMPLETED,
            TransactionStatus.FAILED.value: ReconciliationOutcome.REJECTED,
        }[existing.status]
        return self._result(outcome, event, existing)

    @staticmethod
    def _purchase_amount(event: PaymentEvent) -> Decimal:
        amount = event.amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise ValidationError("amount must be greater than zero")
        return amount

    @staticmethod
    def _describe(event: PaymentEvent) -> str:
        if event.status == DeclaredStatus.MANUAL:
            return f"Manual payment confirmed - {event.payment_method}"
        if event.status == DeclaredStatus.PENDING:
            return f"Pending payment - {event.payment_method}"
        if event.status == DeclaredStatus.APPROVED:
            return f"Payment approved - {event.payment_method}"
        return f"Payment {event.status.value} - {event.payment_method}"

    @staticmethod
    def _result(
        outcome: ReconciliationOutcome,
        event: PaymentEvent,
        transaction: Transaction,
        new_balance: Decimal | None = None,
        error_kind: str | None = None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=outcome,
            external_id=event.external_id,
            transaction_id=transaction.id,
            status=TransactionStatus(transaction.status),
            new_balance=new_balance,
            error_kind=error_kind,
        )
