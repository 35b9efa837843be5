from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.sql import func
from payment_api.database import Base

# Table and column names are shared with the game server's plugin and must not drift.

class Player(Base):
    __tablename__ = "nexus_players"
    uuid = Column(String(36), primary_key=True)
    username = Column(String(16), unique=True, index=True, nullable=False)
    balance = Column("money", Numeric(15, 2), nullable=False, default=0)
    last_transaction = Column(DateTime(timezone=True), nullable=True)

class Transaction(Base):
    __tablename__ = "nexus_transactions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    player_uuid = Column(String(36), ForeignKey("nexus_players.uuid"), index=True, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    type = Column(String(30), nullable=False)
    status = Column(String(20), index=True, nullable=False)
    description = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)
    external_id = Column(String(100), unique=True, index=True, nullable=False)
    extra_metadata = Column("metadata", JSON, nullable=True)
    # NULL for rows written by other applications; those are never swept.
    balance_applied = Column(Boolean, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
