#!/usr/bin/env python3
"""
Unit Tests for the Bet Ledger
Placement preconditions, batch atomicity and races with round closure.
"""

import threading
import unittest
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import func, select

from common.error_handling import (
    AccountNotApproved, AccountNotFound, BetOutOfRange, DuplicateBet, InsufficientBalance,
    RequestIdReused, RoomNotFound, RoundClosed,
)
from common.schemas import AccountStatus, Side, Stake
from game_service.models import Bet, LedgerTransaction
from support import GameTestCase


class BetTestCase(GameTestCase):

    def bet_rows(self, room_id: str = "room-1"):
        with self.session_factory() as db:
            return db.execute(
                select(Bet.account_id, Bet.round_sequence, Bet.side, Bet.amount)
                .where(Bet.room_id == room_id)
                .order_by(Bet.id)
            ).all()

    def transaction_count(self, account_id: str) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count()).select_from(LedgerTransaction).where(LedgerTransaction.account_id == account_id)
            ).scalar()


class TestPlaceBet(BetTestCase):
    """Preconditions checked together with the debit"""

    def setUp(self):
        super().setUp()
        self.make_room()

    def test_bet_debits_balance(self):
        self.make_player("p1", balance=10000)
        response = self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 2000)

        self.assertEqual(response.new_balance, 8000)
        self.assertEqual(response.round_sequence, 1)
        self.assertFalse(response.replayed)
        self.assertEqual(self.balance("p1"), 8000)
        self.assertEqual(self.bet_rows(), [("p1", 1, "ANDAR", 2000)])

    def test_bet_after_close_is_rejected(self):
        """A bet after closeBetting fails with RoundClosed and writes no transaction"""
        self.make_player("p1", balance=10000)
        before = self.transaction_count("p1")
        self.services.rounds.close_betting("room-1")

        with self.assertRaises(RoundClosed):
            self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 2000)
        self.assertEqual(self.transaction_count("p1"), before)
        self.assertEqual(self.balance("p1"), 10000)
        self.assertEqual(self.bet_rows(), [])

    def test_bet_for_previous_round_is_rejected(self):
        """A client still showing an old round cannot bet into the new one"""
        self.make_player("p1", balance=10000)
        self.advance_to_sequence("room-1", 2)

        with self.assertRaises(RoundClosed):
            self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 500, round_sequence=1)
        response = self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 500, round_sequence=2)
        self.assertEqual(response.round_sequence, 2)

    def test_insufficient_balance(self):
        """Balance 500 cannot cover a 2,000 stake"""
        self.make_player("p1", balance=500)
        with self.assertRaises(InsufficientBalance):
            self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 2000)
        self.assertEqual(self.balance("p1"), 500)
        self.assertEqual(self.bet_rows(), [])

    def test_amount_range(self):
        self.make_player("p1", balance=50000)
        with self.assertRaises(BetOutOfRange):
            self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 99)
        with self.assertRaises(BetOutOfRange):
            self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 10001)
        self.assertEqual(self.balance("p1"), 50000)

    def test_accumulated_stake_respects_max(self):
        """The room maximum applies to a side's total for the round"""
        self.make_player("p1", balance=50000)
        self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 6000)
        with self.assertRaises(BetOutOfRange):
            self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 5000)
        self.services.bets.place_bet("p1", "room-1", Side.BAHAR, 5000)
        self.assertEqual(self.balance("p1"), 39000)

    def test_only_approved_accounts_bet(self):
        self.make_player("pending", balance=0, status=AccountStatus.PENDING)
        with self.assertRaises(AccountNotApproved):
            self.services.bets.place_bet("pending", "room-1", Side.ANDAR, 100)
        with self.assertRaises(AccountNotFound):
            self.services.bets.place_bet("ghost", "room-1", Side.ANDAR, 100)

    def test_unknown_room(self):
        self.make_player("p1", balance=1000)
        with self.assertRaises(RoomNotFound):
            self.services.bets.place_bet("p1", "room-404", Side.ANDAR, 100)

    def test_repeat_stakes_accumulate(self):
        """Repeated stakes on a side add up; settlement sums the rows"""
        self.make_player("p1", balance=10000)
        self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 1000)
        response = self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 500)

        self.assertEqual(response.new_balance, 8500)
        mine = self.services.bets.list_my_bets("p1", "room-1")
        self.assertEqual((mine.andar, mine.bahar), (1500, 0))
        self.assertEqual(len(self.bet_rows()), 2)

    def test_batch_is_all_or_nothing(self):
        """A batch that cannot be fully debited places nothing"""
        self.make_player("p1", balance=5000)
        with self.assertRaises(InsufficientBalance):
            self.services.bets.place_bets("p1", "room-1", [
                Stake(side=Side.ANDAR, amount=3000),
                Stake(side=Side.BAHAR, amount=3000),
            ])
        self.assertEqual(self.balance("p1"), 5000)
        self.assertEqual(self.bet_rows(), [])

    def test_batch_merges_chips_per_side(self):
        self.make_player("p1", balance=5000)
        response = self.services.bets.place_bets("p1", "room-1", [
            Stake(side=Side.ANDAR, amount=100),
            Stake(side=Side.BAHAR, amount=300),
            Stake(side=Side.ANDAR, amount=200),
        ])
        self.assertEqual(response.new_balance, 4400)
        self.assertEqual(self.bet_rows(), [("p1", 1, "ANDAR", 300), ("p1", 1, "BAHAR", 300)])

    def test_request_id_replay(self):
        """Resubmitting a request id returns the first result without a second debit"""
        self.make_player("p1", balance=5000)
        first = self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 1000, request_id="req-1")
        again = self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 1000, request_id="req-1")

        self.assertFalse(first.replayed)
        self.assertTrue(again.replayed)
        self.assertEqual(again.new_balance, first.new_balance)
        self.assertEqual(self.balance("p1"), 4000)
        self.assertEqual(len(self.bet_rows()), 1)

    def test_request_id_is_scoped_per_account(self):
        self.make_player("p1", balance=5000)
        self.make_player("p2", balance=5000)
        self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 1000, request_id="same")
        other = self.services.bets.place_bet("p2", "room-1", Side.ANDAR, 1000, request_id="same")
        self.assertFalse(other.replayed)
        self.assertEqual(self.balance("p2"), 4000)

    def test_request_id_reused_for_different_stakes(self):
        """A request id that placed one batch cannot silently answer another"""
        self.make_player("p1", balance=10000)
        self.services.bets.place_bets("p1", "room-1", [Stake(side=Side.BAHAR, amount=700)], request_id="r1")

        with self.assertRaises(RequestIdReused):
            self.services.bets.place_bets("p1", "room-1", [
                Stake(side=Side.BAHAR, amount=700),
                Stake(side=Side.ANDAR, amount=500),
            ], request_id="r1")
        self.assertEqual(self.balance("p1"), 9300)
        mine = self.services.bets.list_my_bets("p1", "room-1")
        self.assertEqual((mine.andar, mine.bahar), (0, 700))

        again = self.services.bets.place_bets("p1", "room-1", [Stake(side=Side.BAHAR, amount=700)], request_id="r1")
        self.assertTrue(again.replayed)

    def test_top_up_below_minimum(self):
        """The room minimum applies to the side's total, so small top-ups are accepted"""
        self.make_player("p1", balance=10000)
        with self.assertRaises(BetOutOfRange):
            self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 50)

        self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 200)
        response = self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 50)
        self.assertEqual(response.new_balance, 9750)
        self.assertEqual(self.services.bets.list_my_bets("p1", "room-1").andar, 250)

    def test_snapshot(self):
        """Round, balance and own bets for a reconnecting player"""
        self.make_player("p1", balance=5000)
        self.services.bets.place_bet("p1", "room-1", Side.BAHAR, 700)

        snapshot = self.services.bets.snapshot("p1", "room-1")
        self.assertEqual(snapshot.round.sequence, 1)
        self.assertEqual(snapshot.balance, 4300)
        self.assertEqual(snapshot.bets.bahar, 700)
        self.assertEqual(snapshot.balance_version, self.services.ledger.balance_snapshot("p1")["version"])


class TestRejectRepeatBets(BetTestCase):
    """One stake per side per round when repeats are rejected"""

    repeat_bet_policy = "reject"

    def test_second_stake_on_side_rejected(self):
        self.make_room()
        self.make_player("p1", balance=5000)
        self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 1000)

        with self.assertRaises(DuplicateBet):
            self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 1000)
        self.services.bets.place_bet("p1", "room-1", Side.BAHAR, 1000)
        self.assertEqual(self.balance("p1"), 3000)


class TestConcurrentBets(BetTestCase):
    """Concurrent placement against one round"""

    def setUp(self):
        super().setUp()
        self.make_room()

    def test_accounts_do_not_interfere(self):
        """Each account's balance reflects only its own debits"""
        players = [self.make_player(f"p{i}", balance=5000) for i in range(4)]

        def bet(account_id):
            for _ in range(5):
                self.services.bets.place_bet(account_id, "room-1", Side.ANDAR, 100)

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(bet, players))

        for account_id in players:
            self.assertEqual(self.balance(account_id), 4500)
            self.assertTrue(self.services.ledger.audit(account_id).consistent)

    def test_same_account_never_overdraws(self):
        """Concurrent debits on one account stop at zero"""
        self.make_player("p1", balance=1000)
        outcomes = []

        def bet(_):
            try:
                self.services.bets.place_bet("p1", "room-1", Side.ANDAR, 300)
                outcomes.append("ok")
            except InsufficientBalance:
                outcomes.append("insufficient")

        with ThreadPoolExecutor(max_workers=5) as pool:
            list(pool.map(bet, range(5)))

        self.assertEqual(outcomes.count("ok"), 3)
        self.assertEqual(self.balance("p1"), 100)
        self.assertTrue(self.services.ledger.audit("p1").consistent)

    def test_bets_racing_close(self):
        """Each bet either commits and is settled, or fails with RoundClosed and leaves no trace"""
        players = [self.make_player(f"p{i}", balance=1000) for i in range(6)]
        start = threading.Barrier(len(players) + 1)
        placed = {}

        def bet(account_id):
            start.wait()
            try:
                self.services.bets.place_bet(account_id, "room-1", Side.ANDAR, 400)
                placed[account_id] = True
            except RoundClosed:
                placed[account_id] = False

        def close():
            start.wait()
            self.services.rounds.close_betting("room-1")

        threads = [threading.Thread(target=bet, args=(p,)) for p in players] + [threading.Thread(target=close)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        rows = {account_id for account_id, _, _, _ in self.bet_rows()}
        for account_id in players:
            self.assertEqual(account_id in rows, placed[account_id])
            self.assertEqual(self.balance(account_id), 600 if placed[account_id] else 1000)

        result = self.services.rounds.declare_winner("room-1", Side.ANDAR).settlement
        self.assertEqual(result.accounts_processed, len(rows))
        for account_id in players:
            self.assertEqual(self.balance(account_id), 1400 if placed[account_id] else 1000)


if __name__ == "__main__":
    unittest.main()
