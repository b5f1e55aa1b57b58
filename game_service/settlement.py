"""
Settlement Engine: resolves every bet of a closed round in one database
transaction and advances the room to its next round.

Even-money payout: each account's stake on the winning side is credited
back twice (the stake was debited at placement). Losing stakes are recorded
with a zero-delta BET_LOSS transaction. Nothing is refunded.
"""
import logging
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from common.error_handling import InvalidTransition
from common.retry import RetryConfig
from common.schemas import BettingStatus, Phase, SettlementResult, Side, TransactionType
from game_service.ledger import apply_transaction
from game_service.models import Bet, RoundHistory, RoundState
from game_service.notifier import enqueue
from game_service.store import Store

logger = logging.getLogger(__name__)

PAYOUT_MULTIPLIER = 2

def round_event_payload(rs: RoundState) -> dict:
    return {
        "room_id": rs.room_id,
        "sequence": rs.sequence,
        "phase": rs.phase,
        "status": rs.betting_status,
        "winner": rs.winner,
        "target_marker": rs.target_marker,
        "version": rs.version,
    }

def load_round(session: Session, room_id: str):
    return session.execute(
        select(RoundState).where(RoundState.room_id == room_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()

def publish_round(session: Session, room_id: str) -> RoundState:
    rs = load_round(session, room_id)
    enqueue(session, "round_state", room_id, rs.version, round_event_payload(rs))
    return rs

def history_result(entry: RoundHistory, replayed: bool) -> SettlementResult:
    return SettlementResult(
        room_id=entry.room_id,
        sequence=entry.sequence,
        winner=entry.winner,
        accounts_processed=entry.accounts_processed,
        total_payout=entry.total_payout,
        replayed=replayed,
    )

class SettlementEngine:
    def __init__(self, store: Store):
        self.store = store

    def settle_round(self, room_id: str, sequence: int, winning_side: Side, retry_config: RetryConfig = None) -> SettlementResult:
        """Settle (room_id, sequence) once. A repeated call returns the recorded result without paying again."""
        winning_side = Side(winning_side)

        def work(db: Session) -> SettlementResult:
            existing = self._history(db, room_id, sequence)
            if existing is not None:
                return history_result(existing, replayed=True)

            # Claim the round first: locks the round row before any account row,
            # the same order bet placement uses
            advanced = db.execute(
                update(RoundState)
                .where(
                    RoundState.room_id == room_id,
                    RoundState.sequence == sequence,
                    RoundState.betting_status == BettingStatus.CLOSED.value,
                    RoundState.winner == winning_side.value,
                )
                .values(
                    sequence=RoundState.sequence + 1,
                    betting_status=BettingStatus.OPEN.value,
                    winner=None,
                    phase=Phase.FIRST_BET.value,
                    bet_count=0,
                    version=RoundState.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if advanced.rowcount == 0:
                # A concurrent settlement may have committed while we waited on the row
                existing = self._history(db, room_id, sequence)
                if existing is not None:
                    return history_result(existing, replayed=True)
                raise InvalidTransition(
                    f"Round {sequence} of room {room_id} is not awaiting settlement for {winning_side.value}",
                    context={"room_id": room_id, "sequence": sequence},
                )

            stakes = db.execute(
                select(Bet.account_id, Bet.side, func.sum(Bet.amount))
                .where(Bet.room_id == room_id, Bet.round_sequence == sequence)
                .group_by(Bet.account_id, Bet.side)
                .order_by(Bet.account_id, Bet.side)
            ).all()

            accounts = set()
            total_payout = 0
            reference = f"{room_id}:{sequence}"
            for account_id, side, stake in stakes:
                stake = int(stake)
                accounts.add(account_id)
                if side == winning_side.value:
                    payout = stake * PAYOUT_MULTIPLIER
                    apply_transaction(
                        db, account_id, TransactionType.BET_WIN, payout,
                        reference=f"{reference}:{side}", aggregate_amount=payout - stake,
                    )
                    total_payout += payout
                else:
                    apply_transaction(db, account_id, TransactionType.BET_LOSS, stake, reference=f"{reference}:{side}")

            target_marker = db.execute(
                select(RoundState.target_marker).where(RoundState.room_id == room_id)
            ).scalar_one()
            entry = RoundHistory(
                room_id=room_id,
                sequence=sequence,
                winner=winning_side.value,
                target_marker=target_marker,
                total_payout=total_payout,
                accounts_processed=len(accounts),
            )
            db.add(entry)
            db.flush()

            publish_round(db, room_id)
            return history_result(entry, replayed=False)

        result = self.store.transact(work, retry_config=retry_config)
        if result.replayed:
            logger.info(f"🔁 Round {sequence} of {room_id} already settled; returning recorded result")
        else:
            logger.info(
                f"🏆 Settled round {sequence} of {room_id}: {result.winner.value} wins, "
                f"{result.accounts_processed} account(s), payout {result.total_payout}"
            )
        return result

    def _history(self, db: Session, room_id: str, sequence: int):
        return db.execute(
            select(RoundHistory).where(RoundHistory.room_id == room_id, RoundHistory.sequence == sequence)
        ).scalar_one_or_none()
