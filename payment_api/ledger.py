from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payment_api.config import TransactionStatus, TransactionType, allowed_transitions
from payment_api.errors import InvalidTransition, TransactionAlreadyExists
from payment_api.logging_config import get_logger
from payment_api.models import Transaction


logger = get_logger(__name__)


class TransactionLedger:
    """
    Transactions keyed by external id. Methods flush but never commit; the caller owns
    the unit of work.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        player_uuid: str,
        amount: Decimal,
        status: TransactionStatus,
        external_id: str,
        payment_method: str,
        description: str,
        metadata: Optional[dict] = None,
        transaction_type: TransactionType = TransactionType.VIP_PURCHASE,
    ) -> Transaction:
        """
        Insert a new row. A collision on the unique external id is reported as
        TransactionAlreadyExists, never as a raw IntegrityError.
        """
        record = Transaction(
            player_uuid=player_uuid,
            amount=amount,
            type=transaction_type.value,
            status=status.value,
            description=description,
            payment_method=payment_method,
            external_id=external_id,
            extra_metadata=metadata or {},
            balance_applied=False,
        )
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            if self.find_by_external_id(external_id) is None:
                raise
            logger.info("Insert collided with existing transaction external_id=%s", external_id)
            raise TransactionAlreadyExists(external_id)
        return record

    def transition(
        self,
        external_id: str,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
        metadata: Optional[dict] = None,
    ) -> bool:
        """
        Move the row from ``from_status`` to ``to_status`` in a single conditional UPDATE.
        Returns False when no row is currently in ``from_status``. Completing a row resets
        its balance marker so the credit is claimed by the caller or the recovery sweep.
        """
        if to_status not in allowed_transitions[from_status]:
            raise InvalidTransition(f"{from_status.value} -> {to_status.value}")
        values = {"status": to_status.value}
        if to_status == TransactionStatus.COMPLETED:
            # Rows written by the other application carry NULL; completing one here owes its credit.
            values["balance_applied"] = False
        if metadata:
            values["extra_metadata"] = metadata
        stmt = (
            update(Transaction)
            .where(Transaction.external_id == external_id)
            .where(Transaction.status == from_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def find_by_external_id(self, external_id: str) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.external_id == external_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def mark_balance_applied(self, transaction_id: int) -> bool:
        """
        Claim the balance effect of a COMPLETED row. Only one caller can ever win the claim.
        """
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .where(Transaction.status == TransactionStatus.COMPLETED.value)
            .where(Transaction.balance_applied.is_(False))
            .values(balance_applied=True)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def list_unapplied(self, limit: int = 100) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.status == TransactionStatus.COMPLETED.value)
            .where(Transaction.balance_applied.is_(False))
            .order_by(Transaction.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_transactions(self, status: Optional[TransactionStatus] = None, limit: int = 100) -> List[Transaction]:
        stmt = select(Transaction)
        if status:
            stmt = stmt.where(Transaction.status == status.value)
        stmt = stmt.order_by(Transaction.id.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())
