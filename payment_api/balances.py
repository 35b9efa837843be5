from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from payment_api.errors import NotFoundError
from payment_api.models import Player


class BalanceStore:
    def __init__(self, db: Session):
        self.db = db

    def find_player(self, username: str) -> Optional[Player]:
        return self.db.execute(select(Player).where(Player.username == username)).scalar_one_or_none()

    def get_balance(self, player_uuid: str) -> Decimal:
        balance = self.db.execute(select(Player.balance).where(Player.uuid == player_uuid)).scalar_one_or_none()
        if balance is None:
            raise NotFoundError("Player not found")
        return balance

    def increment(self, player_uuid: str, amount: Decimal) -> Decimal:
        """
        ``money = money + amount`` evaluated by the database, then the new balance as
        seen inside the same transaction.
        """
        stmt = (
            update(Player)
            .where(Player.uuid == player_uuid)
            .values(balance=Player.balance + amount, last_transaction=func.now())
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            raise NotFoundError("Player not found")
        return self.get_balance(player_uuid)
