from sqlalchemy import (
    Column, Integer, String, BigInteger, DateTime, Text, func, ForeignKey,
    CheckConstraint, UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY
BigId = BigInteger().with_variant(Integer, "sqlite")

class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True)
    display_name = Column(String(128))
    status = Column(String(16), nullable=False, default="PENDING")  # PENDING|APPROVED|BLOCKED
    token_balance = Column(BigInteger, nullable=False, default=0)
    total_deposit = Column(BigInteger, nullable=False, default=0)
    total_withdraw = Column(BigInteger, nullable=False, default=0)
    total_win = Column(BigInteger, nullable=False, default=0)
    total_loss = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (CheckConstraint("token_balance >= 0", name="ck_accounts_balance_non_negative"),)

class LedgerTransaction(Base):
    """Append-only; token_balance is the replay of these rows."""
    __tablename__ = "token_transactions"
    id = Column(BigId, primary_key=True, autoincrement=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False)
    type = Column(String(16), nullable=False)
    amount = Column(BigInteger, nullable=False)
    balance_before = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    reference = Column(String(255))
    admin_id = Column(String(64))
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (Index("ix_token_transactions_account", "account_id", "id"),)

class Room(Base):
    __tablename__ = "rooms"
    id = Column(String(64), primary_key=True)
    name = Column(String(128), nullable=False)
    label = Column(String(128))
    min_bet = Column(BigInteger, nullable=False)
    max_bet = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

class RoundState(Base):
    """Current round of a room, advanced in place with compare-and-swap updates."""
    __tablename__ = "round_states"
    room_id = Column(String(64), ForeignKey("rooms.id"), primary_key=True)
    sequence = Column(BigInteger, nullable=False, default=1)
    phase = Column(String(16), nullable=False, default="FIRST_BET")
    betting_status = Column(String(8), nullable=False, default="OPEN")
    winner = Column(String(8))
    target_marker = Column(String(16))
    bet_count = Column(Integer, nullable=False, default=0)
    version = Column(BigInteger, nullable=False, default=1)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class Bet(Base):
    """One accepted stake; settlement sums rows per (account, side)."""
    __tablename__ = "bets"
    id = Column(BigId, primary_key=True, autoincrement=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False)
    room_id = Column(String(64), ForeignKey("rooms.id"), nullable=False)
    round_sequence = Column(BigInteger, nullable=False)
    side = Column(String(8), nullable=False)
    amount = Column(BigInteger, nullable=False)
    transaction_id = Column(BigInteger, ForeignKey("token_transactions.id"), nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_bets_round", "room_id", "round_sequence"),
        CheckConstraint("amount > 0", name="ck_bets_amount_positive"),
    )

class RoundHistory(Base):
    __tablename__ = "round_history"
    id = Column(BigId, primary_key=True, autoincrement=True)
    room_id = Column(String(64), ForeignKey("rooms.id"), nullable=False)
    sequence = Column(BigInteger, nullable=False)
    winner = Column(String(8), nullable=False)
    target_marker = Column(String(16))
    total_payout = Column(BigInteger, nullable=False, default=0)
    accounts_processed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())

    # At most one settlement per round
    __table_args__ = (UniqueConstraint("room_id", "sequence", name="uq_round_history_round"),)

class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    scope = Column(String(64), primary_key=True)
    request_id = Column(String(64), primary_key=True)
    response = Column(Text, nullable=False)
    # sha256 of the request body; a reused id must carry the same body
    request_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigId, primary_key=True, autoincrement=True)
    event_type = Column(String(32), nullable=False)
    event_key = Column(String(64), nullable=False)
    version = Column(BigInteger, nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    status = Column(String(16), default="new")  # new|sent|failed
