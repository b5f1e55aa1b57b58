"""
Game Service
Round lifecycle, bets, settlement and balances for live Andar Bahar rooms
"""
import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from common.documentation import SERVICE_DOCS, create_custom_openapi
from common.error_handling import RateLimited, add_error_handlers
from common.redis_client import get_redis_client
from common.schemas import (
    AccountView, CreateRoom, DeclareWinnerRequest, DeclareWinnerResponse, LedgerAudit, MyBets,
    OpenAccount, PlaceBetRequest, PlaceBetResponse, RoomSnapshot, RoomView, RoundHistoryEntry,
    RoundStateView, SetAccountStatus, SetPhaseRequest, SetTargetMarkerRequest, TokenTransactionRequest,
    TokenTransactionResponse, TransactionView,
)
from common.settings import settings
from common.tracing import game_tracer, tracing_middleware
from game_service.auth import (
    ensure_self_or_admin, get_principal, get_services, principal_from_token, require_admin, require_player,
)
from game_service.models import Base
from game_service.services import GameServices

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

async def check_bet_rate_limit(principal: dict = Depends(require_player)):
    """Per-account limit on bet submissions"""
    if not settings.rate_limit_enabled:
        return None
    result = get_redis_client().check_rate_limit(
        principal["sub"], "bets", settings.bet_rate_limit_requests, settings.bet_rate_limit_window_seconds
    )
    if not result["allowed"]:
        raise RateLimited(
            f"Rate limit exceeded. Try again in {result['retry_after']} seconds",
            context={"retry_after": result["retry_after"]},
        )
    return result

def create_app(session_factory=None, start_relay: bool = True) -> FastAPI:
    if session_factory is None:
        from game_service.db import SessionLocal
        session_factory = SessionLocal
    services = GameServices(session_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=session_factory.kw["bind"])
        stop = threading.Event()
        if start_relay:
            threading.Thread(target=services.relay.run_forever, args=(stop,), daemon=True).start()
        logger.info("🚀 Game service started")
        yield
        stop.set()
        logger.info("Game service stopped")

    app = FastAPI(title="Game Service", version=VERSION, description=SERVICE_DOCS, lifespan=lifespan)
    app.state.services = services
    add_error_handlers(app)
    app.openapi = lambda: create_custom_openapi(app, "Game Service", VERSION, SERVICE_DOCS)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, game_tracer)

    # --- health ---

    @app.get("/health", tags=["Health"])
    def health():
        status = {"ok": True, "service": "game", "version": VERSION}
        if settings.rate_limit_enabled:
            status["redis"] = get_redis_client().ping()
        return status

    # --- rounds ---

    @app.get("/rooms", response_model=List[RoomView], tags=["Rounds"])
    def list_rooms(principal: dict = Depends(get_principal), svc: GameServices = Depends(get_services)):
        return svc.rounds.list_rooms()

    @app.get("/rooms/{room_id}/round", response_model=RoundStateView, tags=["Rounds"])
    def get_round_state(room_id: str, principal: dict = Depends(get_principal), svc: GameServices = Depends(get_services)):
        return svc.rounds.get_round_state(room_id)

    @app.get("/rooms/{room_id}/history", response_model=List[RoundHistoryEntry], tags=["Rounds"])
    def list_round_history(room_id: str, limit: Optional[int] = Query(None, ge=1, le=500),
                           principal: dict = Depends(get_principal), svc: GameServices = Depends(get_services)):
        return svc.rounds.list_round_history(room_id, limit)

    # --- bets ---

    @app.post("/rooms/{room_id}/bets", response_model=PlaceBetResponse, tags=["Bets"])
    def place_bets(room_id: str, req: PlaceBetRequest, principal: dict = Depends(require_player),
                   _rate=Depends(check_bet_rate_limit), svc: GameServices = Depends(get_services)):
        return svc.bets.place_bets(principal["sub"], room_id, req.stakes, req.round_sequence, req.request_id)

    @app.get("/rooms/{room_id}/bets/me", response_model=MyBets, tags=["Bets"])
    def my_bets(room_id: str, principal: dict = Depends(require_player), svc: GameServices = Depends(get_services)):
        return svc.bets.list_my_bets(principal["sub"], room_id)

    @app.get("/rooms/{room_id}/snapshot", response_model=RoomSnapshot, tags=["Bets"])
    def snapshot(room_id: str, principal: dict = Depends(require_player), svc: GameServices = Depends(get_services)):
        return svc.bets.snapshot(principal["sub"], room_id)

    # --- accounts ---

    @app.get("/accounts/{account_id}", response_model=AccountView, tags=["Accounts"])
    def get_account(account_id: str, principal: dict = Depends(get_principal), svc: GameServices = Depends(get_services)):
        ensure_self_or_admin(principal, account_id)
        return svc.ledger.get_account(account_id)

    @app.get("/accounts/{account_id}/balance", tags=["Accounts"])
    def get_balance(account_id: str, principal: dict = Depends(get_principal), svc: GameServices = Depends(get_services)):
        ensure_self_or_admin(principal, account_id)
        return svc.ledger.balance_snapshot(account_id)

    @app.get("/accounts/{account_id}/transactions", response_model=List[TransactionView], tags=["Accounts"])
    def list_transactions(account_id: str, limit: int = Query(50, ge=1, le=500),
                          principal: dict = Depends(get_principal), svc: GameServices = Depends(get_services)):
        ensure_self_or_admin(principal, account_id)
        return svc.ledger.list_transactions(account_id, limit)

    # --- administration ---

    @app.post("/admin/rooms", response_model=RoomView, tags=["Administration"])
    def provision_room(req: CreateRoom, admin: dict = Depends(require_admin), svc: GameServices = Depends(get_services)):
        return svc.rounds.provision_room(req)

    @app.post("/admin/rooms/{room_id}/open", response_model=RoundStateView, tags=["Administration"])
    def open_betting(room_id: str, admin: dict = Depends(require_admin), svc: GameServices = Depends(get_services)):
        return svc.rounds.open_betting(room_id)

    @app.post("/admin/rooms/{room_id}/close", response_model=RoundStateView, tags=["Administration"])
    def close_betting(room_id: str, admin: dict = Depends(require_admin), svc: GameServices = Depends(get_services)):
        return svc.rounds.close_betting(room_id)

    @app.post("/admin/rooms/{room_id}/phase", response_model=RoundStateView, tags=["Administration"])
    def set_phase(room_id: str, req: SetPhaseRequest, admin: dict = Depends(require_admin),
                  svc: GameServices = Depends(get_services)):
        return svc.rounds.set_phase(room_id, req.phase)

    @app.post("/admin/rooms/{room_id}/target-marker", response_model=RoundStateView, tags=["Administration"])
    def set_target_marker(room_id: str, req: SetTargetMarkerRequest, admin: dict = Depends(require_admin),
                          svc: GameServices = Depends(get_services)):
        return svc.rounds.set_target_marker(room_id, req.card)

    @app.post("/admin/rooms/{room_id}/winner", response_model=DeclareWinnerResponse, tags=["Administration"])
    def declare_winner(room_id: str, req: DeclareWinnerRequest, admin: dict = Depends(require_admin),
                       svc: GameServices = Depends(get_services)):
        return svc.rounds.declare_winner(room_id, req.side, req.expected_sequence)

    @app.post("/admin/rooms/{room_id}/retry-settlement", response_model=DeclareWinnerResponse, tags=["Administration"])
    def retry_settlement(room_id: str, admin: dict = Depends(require_admin), svc: GameServices = Depends(get_services)):
        return svc.rounds.retry_settlement(room_id)

    @app.post("/admin/accounts", response_model=AccountView, tags=["Administration"])
    def open_account(req: OpenAccount, admin: dict = Depends(require_admin), svc: GameServices = Depends(get_services)):
        return svc.ledger.open_account(req)

    @app.post("/admin/accounts/{account_id}/status", response_model=AccountView, tags=["Administration"])
    def set_account_status(account_id: str, req: SetAccountStatus, admin: dict = Depends(require_admin),
                           svc: GameServices = Depends(get_services)):
        return svc.ledger.set_account_status(account_id, req.status)

    @app.post("/admin/accounts/{account_id}/tokens", response_model=TokenTransactionResponse, tags=["Administration"])
    def process_token_transaction(account_id: str, req: TokenTransactionRequest, admin: dict = Depends(require_admin),
                                  svc: GameServices = Depends(get_services)):
        return svc.ledger.process_token_transaction(account_id, admin["sub"], req)

    @app.get("/admin/accounts/{account_id}/audit", response_model=LedgerAudit, tags=["Administration"])
    def audit_account(account_id: str, admin: dict = Depends(require_admin), svc: GameServices = Depends(get_services)):
        return svc.ledger.audit(account_id)

    # --- realtime ---

    @app.websocket("/ws/rooms/{room_id}")
    async def room_feed(websocket: WebSocket, room_id: str, token: str = Query(...)):
        await _feed(websocket, token, "round_state", room_id,
                    lambda: services.rounds.get_round_state(room_id).model_dump(mode="json"))

    @app.websocket("/ws/accounts/{account_id}")
    async def account_feed(websocket: WebSocket, account_id: str, token: str = Query(...)):
        await _feed(websocket, token, "balance", account_id,
                    lambda: services.ledger.balance_snapshot(account_id), account_id=account_id)

    async def _feed(websocket: WebSocket, token: str, event_type: str, key: str, load_snapshot, account_id: str = None):
        """Snapshot first, then ordered change events newer than the snapshot."""
        try:
            principal = principal_from_token(token)
            if account_id is not None:
                ensure_self_or_admin(principal, account_id)
        except HTTPException:
            await websocket.close(code=1008)
            return

        await websocket.accept()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        # Subscribe before reading the snapshot so no committed change falls in between
        unsubscribe = services.notifier.subscribe(
            event_type, key, lambda event: loop.call_soon_threadsafe(queue.put_nowait, event)
        )
        receiver = None
        try:
            snapshot = await run_in_threadpool(load_snapshot)
            await websocket.send_json({"type": "snapshot", "key": key, "version": snapshot["version"], "payload": snapshot})
            floor = snapshot["version"]
            receiver = asyncio.ensure_future(websocket.receive())
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if receiver in done:
                    getter.cancel()
                    if receiver.result()["type"] == "websocket.disconnect":
                        break
                    # Clients only listen; anything they send is ignored
                    receiver = asyncio.ensure_future(websocket.receive())
                    continue
                event = getter.result()
                if event.version <= floor:
                    continue
                floor = event.version
                await websocket.send_json(event.model_dump(mode="json"))
            logger.info(f"Feed {event_type}:{key} closed by client")
        except WebSocketDisconnect:
            logger.info(f"Feed {event_type}:{key} disconnected")
        finally:
            if receiver is not None and not receiver.done():
                receiver.cancel()
            unsubscribe()

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
