"""
Bet Ledger: turns a batch of staged chips into debited, recorded stakes.

The whole batch is one database transaction: the conditional bump of the
round's bet counter (fails unless the round is still OPEN at the expected
sequence), the balance debit and the bet rows commit together or not at all.
"""
import logging
from collections import OrderedDict
from typing import Dict, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from common.error_handling import (
    AccountNotApproved, AccountNotFound, BetOutOfRange, DuplicateBet, RoomNotFound, RoundClosed,
)
from common.schemas import (
    AccountStatus, BettingStatus, MyBets, PlaceBetResponse, RoomSnapshot, Side, Stake, TransactionType,
)
from common.settings import settings
from game_service.ledger import apply_transaction, load_account
from game_service.models import Account, Bet, LedgerTransaction, Room, RoundState
from game_service.rounds import round_view
from game_service.settlement import load_round
from game_service.store import Store, load_replay, remember, request_fingerprint

logger = logging.getLogger(__name__)

def merge_stakes(stakes: Iterable[Stake]) -> "OrderedDict[Side, int]":
    merged = OrderedDict()
    for stake in stakes:
        side = Side(stake.side)
        merged[side] = merged.get(side, 0) + stake.amount
    return merged

def stakes_by_side(session: Session, account_id: str, room_id: str, sequence: int) -> Dict[str, int]:
    rows = session.execute(
        select(Bet.side, func.sum(Bet.amount))
        .where(Bet.account_id == account_id, Bet.room_id == room_id, Bet.round_sequence == sequence)
        .group_by(Bet.side)
    ).all()
    return {side: int(total) for side, total in rows}

class BetLedger:
    def __init__(self, store: Store, repeat_bet_policy: Optional[str] = None):
        self.store = store
        self.repeat_bet_policy = repeat_bet_policy or settings.repeat_bet_policy

    def place_bet(self, account_id: str, room_id: str, side: Side, amount: int,
                  round_sequence: Optional[int] = None, request_id: Optional[str] = None) -> PlaceBetResponse:
        return self.place_bets(account_id, room_id, [Stake(side=side, amount=amount)], round_sequence, request_id)

    def place_bets(self, account_id: str, room_id: str, stakes: Iterable[Stake],
                   round_sequence: Optional[int] = None, request_id: Optional[str] = None) -> PlaceBetResponse:
        merged = merge_stakes(stakes)
        if not merged:
            raise BetOutOfRange("No stakes to place", field="stakes")
        scope = f"bet:{account_id}"
        fingerprint = request_fingerprint({
            "room_id": room_id,
            "round_sequence": round_sequence,
            "stakes": {side.value: amount for side, amount in merged.items()},
        })

        def work(db: Session) -> PlaceBetResponse:
            replay = load_replay(db, scope, request_id, fingerprint)
            if replay is not None:
                return PlaceBetResponse(**{**replay, "replayed": True})

            room = db.get(Room, room_id)
            if room is None:
                raise RoomNotFound(f"Room {room_id} not found", context={"room_id": room_id})
            status = db.execute(select(Account.status).where(Account.id == account_id)).scalar_one_or_none()
            if status is None:
                raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})
            if status != AccountStatus.APPROVED.value:
                raise AccountNotApproved(f"Account {account_id} is {status}", context={"account_id": account_id})

            for side, amount in merged.items():
                if amount > room.max_bet:
                    raise BetOutOfRange(
                        f"Stake {amount} on {side.value} exceeds {room.max_bet}",
                        field="amount",
                        context={"min_bet": room.min_bet, "max_bet": room.max_bet, "side": side.value},
                    )

            sequence = round_sequence
            if sequence is None:
                sequence = db.execute(
                    select(RoundState.sequence).where(RoundState.room_id == room_id)
                ).scalar_one()

            # Serializes with close/settle on the round row; no bet commits after the round closes
            opened = db.execute(
                update(RoundState)
                .where(
                    RoundState.room_id == room_id,
                    RoundState.sequence == sequence,
                    RoundState.betting_status == BettingStatus.OPEN.value,
                )
                .values(bet_count=RoundState.bet_count + len(merged))
                .execution_options(synchronize_session=False)
            )
            if opened.rowcount == 0:
                raise RoundClosed(
                    f"Round {sequence} of {room_id} is not open for bets",
                    context={"room_id": room_id, "round_sequence": sequence},
                )

            existing = stakes_by_side(db, account_id, room_id, sequence)
            for side, amount in merged.items():
                already = existing.get(side.value, 0)
                if already and self.repeat_bet_policy == "reject":
                    raise DuplicateBet(
                        f"Already staked {already} on {side.value} this round",
                        context={"side": side.value, "existing": already},
                    )
                total = already + amount
                # Limits apply to the side's total for the round, so a top-up may be below min_bet
                if total < room.min_bet or total > room.max_bet:
                    raise BetOutOfRange(
                        f"Total stake {total} on {side.value} outside {room.min_bet}-{room.max_bet}",
                        field="amount",
                        context={"min_bet": room.min_bet, "max_bet": room.max_bet, "side": side.value},
                    )

            new_balance = None
            for side, amount in merged.items():
                tx = apply_transaction(
                    db, account_id, TransactionType.BET_DEBIT, amount,
                    reference=f"{room_id}:{sequence}:{side.value}",
                )
                db.add(Bet(
                    account_id=account_id,
                    room_id=room_id,
                    round_sequence=sequence,
                    side=side.value,
                    amount=amount,
                    transaction_id=tx.id,
                ))
                new_balance = tx.balance_after
            db.flush()

            response = PlaceBetResponse(new_balance=new_balance, round_sequence=sequence)
            remember(db, scope, request_id, response.model_dump(mode="json"), fingerprint)
            return response

        response = self.store.transact(work)
        if not response.replayed:
            placed = ", ".join(f"{side.value}={amount}" for side, amount in merged.items())
            logger.info(f"🎯 {account_id} bet {placed} in {room_id} round {response.round_sequence}; balance {response.new_balance}")
        return response

    def list_my_bets(self, account_id: str, room_id: str, sequence: Optional[int] = None) -> MyBets:
        def work(db: Session):
            rs = load_round(db, room_id)
            if rs is None:
                raise RoomNotFound(f"Room {room_id} not found", context={"room_id": room_id})
            return self._my_bets(db, account_id, room_id, sequence or rs.sequence)
        return self.store.read(work)

    def snapshot(self, account_id: str, room_id: str) -> RoomSnapshot:
        """Everything a reconnecting player needs, read in one session."""
        def work(db: Session):
            rs = load_round(db, room_id)
            if rs is None:
                raise RoomNotFound(f"Room {room_id} not found", context={"room_id": room_id})
            acc = load_account(db, account_id)
            last_tx = db.execute(
                select(func.max(LedgerTransaction.id)).where(LedgerTransaction.account_id == account_id)
            ).scalar()
            return RoomSnapshot(
                round=round_view(rs),
                balance=acc.token_balance,
                balance_version=last_tx or 0,
                bets=self._my_bets(db, account_id, room_id, rs.sequence),
            )
        return self.store.read(work)

    def _my_bets(self, db: Session, account_id: str, room_id: str, sequence: int) -> MyBets:
        totals = stakes_by_side(db, account_id, room_id, sequence)
        return MyBets(
            room_id=room_id,
            round_sequence=sequence,
            andar=totals.get(Side.ANDAR.value, 0),
            bahar=totals.get(Side.BAHAR.value, 0),
        )
