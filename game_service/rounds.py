"""
Round Controller: the admin-driven state machine of each room.

Every transition is a conditional UPDATE on the room's round_states row
(compare status / sequence / winner, then write), never a blind overwrite of
a value read earlier. declareWinner claims the round by setting the winner
with such an update; only the admin session whose update matches goes on to
settle.
"""
import logging
import time
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from common.error_handling import (
    AlreadyExists, BusinessLogicError, ErrorCodes, InvalidTransition, RoomNotFound,
    ServiceError, SettlementIncomplete,
)
from common.retry import SETTLEMENT_RETRY_CONFIG
from common.schemas import (
    BettingStatus, CreateRoom, DeclareWinnerResponse, Phase, RoomView, RoundHistoryEntry,
    RoundStateView, SettlementResult, Side,
)
from common.settings import settings
from common.tracing import game_tracer
from game_service.models import Room, RoundHistory, RoundState
from game_service.notifier import enqueue
from game_service.settlement import SettlementEngine, load_round, publish_round
from game_service.store import Store

logger = logging.getLogger(__name__)

def round_view(rs: RoundState) -> RoundStateView:
    return RoundStateView(
        room_id=rs.room_id,
        sequence=rs.sequence,
        phase=rs.phase,
        status=rs.betting_status,
        winner=rs.winner,
        target_marker=rs.target_marker,
        version=rs.version,
    )

def room_view(room: Room, rs: RoundState) -> RoomView:
    return RoomView(
        room_id=room.id,
        name=room.name,
        label=room.label,
        min_bet=room.min_bet,
        max_bet=room.max_bet,
        round=round_view(rs),
    )

class RoundController:
    def __init__(self, store: Store, settlement: SettlementEngine):
        self.store = store
        self.settlement = settlement

    # --- provisioning & reads ---

    def provision_room(self, req: CreateRoom) -> RoomView:
        min_bet = req.min_bet or settings.default_min_bet
        max_bet = req.max_bet or settings.default_max_bet
        if min_bet > max_bet:
            raise BusinessLogicError("min_bet cannot exceed max_bet", code=ErrorCodes.VALIDATION_ERROR, field="min_bet")

        def work(db: Session):
            if db.get(Room, req.room_id) is not None:
                raise AlreadyExists(f"Room {req.room_id} already exists", code=ErrorCodes.ROOM_EXISTS)
            room = Room(id=req.room_id, name=req.name, label=req.label, min_bet=min_bet, max_bet=max_bet)
            db.add(room)
            db.flush()
            db.add(RoundState(
                room_id=room.id,
                sequence=1,
                phase=Phase.FIRST_BET.value,
                betting_status=BettingStatus.OPEN.value,
                winner=None,
                target_marker=None,
                bet_count=0,
                version=1,
            ))
            db.flush()
            rs = publish_round(db, room.id)
            return room_view(room, rs)

        view = self.store.transact(work)
        logger.info(f"🎲 Provisioned room {view.room_id} ({view.min_bet}-{view.max_bet})")
        return view

    def list_rooms(self) -> List[RoomView]:
        def work(db: Session):
            rows = db.execute(
                select(Room, RoundState).join(RoundState, RoundState.room_id == Room.id).order_by(Room.created_at, Room.id)
            ).all()
            return [room_view(room, rs) for room, rs in rows]
        return self.store.read(work)

    def get_round_state(self, room_id: str) -> RoundStateView:
        def work(db: Session):
            rs = load_round(db, room_id)
            if rs is None:
                raise RoomNotFound(f"Room {room_id} not found", context={"room_id": room_id})
            return round_view(rs)
        return self.store.read(work)

    def list_round_history(self, room_id: str, limit: Optional[int] = None) -> List[RoundHistoryEntry]:
        limit = limit or settings.history_default_limit

        def work(db: Session):
            if db.get(Room, room_id) is None:
                raise RoomNotFound(f"Room {room_id} not found", context={"room_id": room_id})
            rows = db.execute(
                select(RoundHistory)
                .where(RoundHistory.room_id == room_id)
                .order_by(RoundHistory.sequence.desc())
                .limit(limit)
            ).scalars().all()
            return [
                RoundHistoryEntry(
                    sequence=row.sequence,
                    winner=row.winner,
                    target_marker=row.target_marker,
                    payout_total=row.total_payout,
                    accounts_processed=row.accounts_processed,
                    timestamp=row.created_at,
                )
                for row in rows
            ]
        return self.store.read(work)

    # --- transitions ---

    def _transition(self, room_id: str, action: str, conditions, values) -> RoundStateView:
        def work(db: Session):
            result = db.execute(
                update(RoundState)
                .where(RoundState.room_id == room_id, *conditions)
                .values(version=RoundState.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                rs = load_round(db, room_id)
                if rs is None:
                    raise RoomNotFound(f"Room {room_id} not found", context={"room_id": room_id})
                raise InvalidTransition(
                    f"Cannot {action} room {room_id}: round {rs.sequence} is {rs.betting_status}"
                    + (f" with winner {rs.winner} awaiting settlement" if rs.winner else ""),
                    context={"room_id": room_id, "sequence": rs.sequence, "status": rs.betting_status},
                )
            return round_view(publish_round(db, room_id))

        view = self.store.transact(work)
        logger.info(f"🎛️ {action} {room_id}: round {view.sequence} {view.status.value}/{view.phase.value} v{view.version}")
        return view

    def open_betting(self, room_id: str) -> RoundStateView:
        """Open (or force-reopen) betting on the current round. Refused while a declared winner awaits settlement."""
        return self._transition(
            room_id, "open",
            [RoundState.winner.is_(None)],
            {"betting_status": BettingStatus.OPEN.value},
        )

    def close_betting(self, room_id: str) -> RoundStateView:
        return self._transition(
            room_id, "close",
            [RoundState.betting_status == BettingStatus.OPEN.value],
            {"betting_status": BettingStatus.CLOSED.value},
        )

    def set_phase(self, room_id: str, phase: Phase) -> RoundStateView:
        return self._transition(room_id, "set phase of", [], {"phase": Phase(phase).value})

    def set_target_marker(self, room_id: str, card: Optional[str]) -> RoundStateView:
        return self._transition(
            room_id, "set target marker of",
            [RoundState.winner.is_(None)],
            {"target_marker": card},
        )

    def declare_winner(self, room_id: str, side: Side, expected_sequence: Optional[int] = None) -> DeclareWinnerResponse:
        """Record the winner on the closed round, then settle it.

        Raises InvalidTransition when betting is not closed or a winner is
        already set (a second admin session or a double click), and
        SettlementIncomplete when the payout could not be applied; in that
        case the round stays CLOSED with the winner set until
        retry_settlement succeeds.
        """
        side = Side(side)

        def claim(db: Session) -> int:
            rs = load_round(db, room_id)
            if rs is None:
                raise RoomNotFound(f"Room {room_id} not found", context={"room_id": room_id})
            sequence = rs.sequence if expected_sequence is None else expected_sequence
            result = db.execute(
                update(RoundState)
                .where(
                    RoundState.room_id == room_id,
                    RoundState.sequence == sequence,
                    RoundState.betting_status == BettingStatus.CLOSED.value,
                    RoundState.winner.is_(None),
                )
                .values(winner=side.value, version=RoundState.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = load_round(db, room_id)
                raise InvalidTransition(
                    f"Cannot declare winner for round {sequence} of {room_id}: "
                    f"round {current.sequence} is {current.betting_status}, winner {current.winner or 'unset'}",
                    context={"room_id": room_id, "sequence": current.sequence, "status": current.betting_status},
                )
            publish_round(db, room_id)
            return sequence

        sequence = self.store.transact(claim)
        logger.info(f"📣 Winner {side.value} declared for round {sequence} of {room_id}")

        settlement = self._settle(room_id, sequence, side)
        return DeclareWinnerResponse(settlement=settlement, round=self.get_round_state(room_id))

    def retry_settlement(self, room_id: str) -> DeclareWinnerResponse:
        rs = self.get_round_state(room_id)
        if rs.status != BettingStatus.CLOSED or rs.winner is None:
            raise InvalidTransition(
                f"Round {rs.sequence} of {room_id} has no pending settlement",
                context={"room_id": room_id, "sequence": rs.sequence},
            )
        settlement = self._settle(room_id, rs.sequence, rs.winner)
        return DeclareWinnerResponse(settlement=settlement, round=self.get_round_state(room_id))

    def _settle(self, room_id: str, sequence: int, side: Side) -> SettlementResult:
        config = SETTLEMENT_RETRY_CONFIG.with_attempts(settings.settlement_attempts)
        span = game_tracer.span("settle_round").tag(room_id=room_id, sequence=sequence, winner=side.value)
        try:
            with span:
                result = self.settlement.settle_round(room_id, sequence, side, retry_config=config)
                span.tag(accounts=result.accounts_processed, payout=result.total_payout, replayed=result.replayed)
                return result
        except BusinessLogicError:
            raise
        except Exception as e:
            self._raise_alert(room_id, sequence, side, e)
            raise SettlementIncomplete(
                f"Settlement of round {sequence} in {room_id} did not complete; round held CLOSED, retry settlement",
                original_error=e.original_error if isinstance(e, ServiceError) else e,
                context={"room_id": room_id, "sequence": sequence, "winner": side.value},
            ) from e

    def _raise_alert(self, room_id: str, sequence: int, side: Side, error: Exception):
        logger.critical(f"🚨 SETTLEMENT INCOMPLETE room={room_id} round={sequence} winner={side.value}: {error}")

        def work(db: Session):
            enqueue(db, "settlement_alert", room_id, time.time_ns(), {
                "room_id": room_id,
                "sequence": sequence,
                "winner": side.value,
                "error": str(error),
            })

        try:
            self.store.transact(work)
        except ServiceError as alert_error:
            logger.critical(f"🚨 Could not record settlement alert for {room_id}/{sequence}: {alert_error}")
