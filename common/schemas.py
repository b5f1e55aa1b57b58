from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Literal, Optional

class Side(str, Enum):
    ANDAR = "ANDAR"
    BAHAR = "BAHAR"

class Phase(str, Enum):
    FIRST_BET = "FIRST_BET"
    SECOND_BET = "SECOND_BET"

class BettingStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"

class AccountStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    BLOCKED = "BLOCKED"

class TransactionType(str, Enum):
    ADMIN_CREDIT = "ADMIN_CREDIT"
    ADMIN_DEBIT = "ADMIN_DEBIT"
    BET_DEBIT = "BET_DEBIT"
    BET_WIN = "BET_WIN"
    BET_LOSS = "BET_LOSS"

# --- round state ---

class RoundStateView(BaseModel):
    room_id: str
    sequence: int
    phase: Phase
    status: BettingStatus
    winner: Optional[Side] = None
    target_marker: Optional[str] = None
    version: int

class SetPhaseRequest(BaseModel):
    phase: Phase

class SetTargetMarkerRequest(BaseModel):
    card: Optional[str] = Field(default=None, max_length=16)

class DeclareWinnerRequest(BaseModel):
    side: Side
    # Round the console is showing; a different current round is refused
    expected_sequence: Optional[int] = Field(default=None, ge=1)

class SettlementResult(BaseModel):
    room_id: str
    sequence: int
    winner: Side
    accounts_processed: int
    total_payout: int
    replayed: bool = False

class DeclareWinnerResponse(BaseModel):
    settlement: SettlementResult
    round: RoundStateView

class RoundHistoryEntry(BaseModel):
    sequence: int
    winner: Side
    target_marker: Optional[str] = None
    payout_total: int
    accounts_processed: int
    timestamp: datetime

# --- rooms ---

class CreateRoom(BaseModel):
    room_id: str = Field(min_length=1, max_length=64)
    name: str
    label: Optional[str] = None
    min_bet: Optional[int] = Field(default=None, gt=0)
    max_bet: Optional[int] = Field(default=None, gt=0)

class RoomView(BaseModel):
    room_id: str
    name: str
    label: Optional[str] = None
    min_bet: int
    max_bet: int
    round: RoundStateView

# --- bets ---

class Stake(BaseModel):
    side: Side
    amount: int = Field(gt=0)

class PlaceBetRequest(BaseModel):
    """One atomic batch of stakes for the current round of a room."""
    stakes: List[Stake] = Field(min_length=1)
    round_sequence: Optional[int] = None
    request_id: Optional[str] = Field(default=None, max_length=64)

class PlaceBetResponse(BaseModel):
    new_balance: int
    round_sequence: int
    replayed: bool = False

class MyBets(BaseModel):
    room_id: str
    round_sequence: int
    andar: int = 0
    bahar: int = 0

class RoomSnapshot(BaseModel):
    round: RoundStateView
    balance: int
    balance_version: int = 0
    bets: MyBets

# --- ledger ---

class OpenAccount(BaseModel):
    account_id: str = Field(min_length=1, max_length=64)
    display_name: Optional[str] = None
    status: AccountStatus = AccountStatus.PENDING

class SetAccountStatus(BaseModel):
    status: AccountStatus

class AccountView(BaseModel):
    account_id: str
    display_name: Optional[str] = None
    status: AccountStatus
    token_balance: int
    total_deposit: int
    total_withdraw: int
    total_win: int
    total_loss: int

class TokenTransactionRequest(BaseModel):
    action: Literal["ADD", "WITHDRAW", "ADJUST"]
    amount: int = Field(ge=0)
    reference: Optional[str] = None
    request_id: Optional[str] = Field(default=None, max_length=64)

class TransactionView(BaseModel):
    id: int
    account_id: str
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    reference: Optional[str] = None
    created_at: datetime

class TokenTransactionResponse(BaseModel):
    success: bool
    before_balance: int
    after_balance: int
    transaction: Optional[TransactionView] = None

class LedgerAudit(BaseModel):
    account_id: str
    stored_balance: int
    replayed_balance: int
    transactions: int
    consistent: bool

# --- realtime events ---

class ChangeEvent(BaseModel):
    type: Literal["round_state", "balance", "settlement_alert"]
    key: str
    version: int
    payload: dict
