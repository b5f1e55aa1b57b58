"""
Shared fixtures: every test case gets its own SQLite file database.
"""
import os
import shutil
import tempfile
import unittest

from common.schemas import AccountStatus, CreateRoom, OpenAccount, Side, TokenTransactionRequest
from game_service.db import make_session_factory
from game_service.models import Base
from game_service.services import GameServices

class GameTestCase(unittest.TestCase):
    repeat_bet_policy = "accumulate"

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="andar-bahar-")
        self.session_factory = make_session_factory(f"sqlite:///{os.path.join(self.tmpdir, 'game.db')}")
        Base.metadata.create_all(bind=self.session_factory.kw["bind"])
        self.services = GameServices(self.session_factory, kafka_enabled=False, repeat_bet_policy=self.repeat_bet_policy)

    def tearDown(self):
        self.session_factory.kw["bind"].dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def make_room(self, room_id: str = "room-1", min_bet: int = 100, max_bet: int = 10000):
        return self.services.rounds.provision_room(
            CreateRoom(room_id=room_id, name=f"Table {room_id}", min_bet=min_bet, max_bet=max_bet)
        )

    def make_player(self, account_id: str, balance: int = 0, status: AccountStatus = AccountStatus.APPROVED):
        self.services.ledger.open_account(OpenAccount(account_id=account_id, display_name=account_id, status=status))
        if balance:
            self.services.ledger.process_token_transaction(
                account_id, "admin-1", TokenTransactionRequest(action="ADD", amount=balance)
            )
        return account_id

    def balance(self, account_id: str) -> int:
        return self.services.ledger.get_balance(account_id)

    def advance_to_sequence(self, room_id: str, sequence: int):
        """Settle empty rounds until the room's current round is ``sequence``."""
        while self.services.rounds.get_round_state(room_id).sequence < sequence:
            self.services.rounds.close_betting(room_id)
            self.services.rounds.declare_winner(room_id, Side.ANDAR)
