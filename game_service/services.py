from typing import Optional

from game_service.bets import BetLedger
from game_service.ledger import LedgerStore
from game_service.notifier import Notifier, OutboxRelay
from game_service.rounds import RoundController
from game_service.settlement import SettlementEngine
from game_service.store import Store

class GameServices:
    """Wires the components of one game service instance to a session factory."""

    def __init__(self, session_factory, kafka_enabled: Optional[bool] = None, repeat_bet_policy: Optional[str] = None):
        self.session_factory = session_factory
        self.notifier = Notifier()
        self.relay = OutboxRelay(session_factory, self.notifier, kafka_enabled=kafka_enabled)
        self.store = Store(session_factory, self.relay)
        self.ledger = LedgerStore(self.store)
        self.settlement = SettlementEngine(self.store)
        self.rounds = RoundController(self.store, self.settlement)
        self.bets = BetLedger(self.store, repeat_bet_policy=repeat_bet_policy)
