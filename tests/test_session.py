#!/usr/bin/env python3
"""
Unit Tests for the Player Session client
Local staging, indeterminate submissions and push reconciliation.
"""

import unittest

import requests

from common.schemas import Side
from game_client.session import BetRejected, BetSubmissionIndeterminate, PlayerSession, StakeQueue


class FakeResponse:
    def __init__(self, status_code: int, body):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeHttp:
    """Replays queued responses (or raises queued exceptions) and records requests."""

    def __init__(self):
        self.responses = []
        self.calls = []

    def _next(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)


def round_state(sequence=1, status="OPEN", version=1, winner=None):
    return {"room_id": "room-1", "sequence": sequence, "phase": "FIRST_BET", "status": status,
            "winner": winner, "target_marker": None, "version": version}


def snapshot(balance=10000, sequence=1, version=1, andar=0, bahar=0, balance_version=1):
    return {
        "round": round_state(sequence=sequence, version=version),
        "balance": balance,
        "balance_version": balance_version,
        "bets": {"room_id": "room-1", "round_sequence": sequence, "andar": andar, "bahar": bahar},
    }


class TestStakeQueue(unittest.TestCase):

    def test_add_undo_totals(self):
        queue = StakeQueue()
        queue.add(Side.ANDAR, 100)
        queue.add("BAHAR", 500)
        queue.add(Side.ANDAR, 200)
        self.assertEqual(queue.totals(), {Side.ANDAR: 300, Side.BAHAR: 500})
        self.assertEqual(queue.undo(), (Side.ANDAR, 200))
        self.assertEqual(queue.total(), 600)
        self.assertEqual(queue.stakes(), [{"side": "ANDAR", "amount": 100}, {"side": "BAHAR", "amount": 500}])
        queue.clear()
        self.assertIsNone(queue.undo())
        self.assertEqual(len(queue), 0)

    def test_rejects_non_positive_chip(self):
        with self.assertRaises(ValueError):
            StakeQueue().add(Side.ANDAR, 0)


class TestPlayerSession(unittest.TestCase):

    def setUp(self):
        self.http = FakeHttp()
        self.session = PlayerSession("http://game:8000/", "p1", "room-1", "token-p1", http=self.http, timeout=2.0)
        self.http.responses.append(FakeResponse(200, snapshot()))
        self.session.resync()

    def test_resync_loads_state(self):
        method, url, kwargs = self.http.calls[0]
        self.assertEqual((method, url), ("GET", "http://game:8000/rooms/room-1/snapshot"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token-p1")
        self.assertEqual(self.session.balance, 10000)
        self.assertEqual(self.session.sequence, 1)
        self.assertTrue(self.session.betting_open)

    def test_predicted_balance_is_local(self):
        self.assertEqual(self.session.add_chip(Side.ANDAR, 2000), 8000)
        self.session.add_chip(Side.BAHAR, 1000)
        self.session.undo()
        self.assertEqual(self.session.predicted_balance(), 8000)
        self.assertEqual(self.session.balance, 10000)
        self.assertEqual(self.http.calls[1:], [])

    def test_chip_beyond_balance_refused(self):
        self.session.add_chip(Side.ANDAR, 9000)
        with self.assertRaises(BetRejected) as ctx:
            self.session.add_chip(Side.BAHAR, 2000)
        self.assertEqual(ctx.exception.code, "INSUFFICIENT_BALANCE")

    def test_place_bets_submits_batch(self):
        self.session.add_chip(Side.ANDAR, 1000)
        self.session.add_chip(Side.ANDAR, 500)
        self.http.responses.append(FakeResponse(200, {"new_balance": 8500, "round_sequence": 1, "replayed": False}))

        body = self.session.place_bets()
        method, url, kwargs = self.http.calls[-1]
        self.assertEqual(url, "http://game:8000/rooms/room-1/bets")
        self.assertEqual(kwargs["json"]["stakes"], [{"side": "ANDAR", "amount": 1500}])
        self.assertEqual(kwargs["json"]["round_sequence"], 1)
        self.assertTrue(kwargs["json"]["request_id"])
        self.assertEqual(kwargs["timeout"], 2.0)

        self.assertEqual(body["new_balance"], 8500)
        self.assertEqual(self.session.balance, 8500)
        self.assertEqual(self.session.confirmed_bets[Side.ANDAR], 1500)
        self.assertEqual(len(self.session.queue), 0)
        self.assertIsNone(self.session.pending_request_id)

    def test_empty_queue_sends_nothing(self):
        self.assertIsNone(self.session.place_bets())
        self.assertEqual(len(self.http.calls), 1)

    def test_timeout_is_indeterminate(self):
        """A timed-out submission keeps its request id and freezes its payload"""
        self.session.add_chip(Side.BAHAR, 700)
        self.http.responses.append(requests.Timeout("read timed out"))

        with self.assertRaises(BetSubmissionIndeterminate) as ctx:
            self.session.place_bets()
        request_id = ctx.exception.request_id
        self.assertEqual(self.session.pending_request_id, request_id)
        self.assertEqual(len(self.session.queue), 1)
        self.assertEqual(self.session.balance, 10000)

        with self.assertRaises(BetRejected) as refused:
            self.session.add_chip(Side.ANDAR, 500)
        self.assertEqual(refused.exception.code, "BET_PENDING")
        with self.assertRaises(BetRejected):
            self.session.undo()

    def test_committed_batch_is_dropped_on_resync(self):
        """Chips the server already took are not staged or subtracted twice"""
        self.session.add_chip(Side.BAHAR, 700)
        self.http.responses.append(requests.Timeout("read timed out"))
        with self.assertRaises(BetSubmissionIndeterminate) as ctx:
            self.session.place_bets()
        lost_id = ctx.exception.request_id

        self.http.responses.append(FakeResponse(200, snapshot(balance=9300, bahar=700, balance_version=2)))
        self.session.resync()
        self.assertIsNone(self.session.pending_request_id)
        self.assertEqual(len(self.session.queue), 0)
        self.assertEqual(self.session.predicted_balance(), 9300)
        self.assertEqual(self.session.confirmed_bets, {Side.ANDAR: 0, Side.BAHAR: 700})

        self.session.add_chip(Side.ANDAR, 500)
        self.http.responses.append(FakeResponse(200, {"new_balance": 8800, "round_sequence": 1, "replayed": False}))
        self.session.place_bets()
        sent = self.http.calls[-1][2]["json"]
        self.assertEqual(sent["stakes"], [{"side": "ANDAR", "amount": 500}])
        self.assertNotEqual(sent["request_id"], lost_id)
        self.assertEqual(self.session.confirmed_bets, {Side.ANDAR: 500, Side.BAHAR: 700})
        self.assertEqual(self.session.balance, 8800)

    def test_uncommitted_batch_is_resent_unchanged(self):
        """When the snapshot shows no stake, the same payload goes out under the same id"""
        self.session.add_chip(Side.BAHAR, 700)
        self.http.responses.append(requests.ConnectionError("reset by peer"))
        with self.assertRaises(BetSubmissionIndeterminate):
            self.session.place_bets()
        first = self.http.calls[-1][2]["json"]

        self.http.responses.append(FakeResponse(200, snapshot(balance=10000, balance_version=1)))
        self.session.resync()
        self.assertEqual(self.session.pending_request_id, first["request_id"])
        self.assertEqual(self.session.predicted_balance(), 9300)

        self.http.responses.append(FakeResponse(200, {"new_balance": 9300, "round_sequence": 1, "replayed": False}))
        self.session.place_bets()
        self.assertEqual(self.http.calls[-1][2]["json"], first)
        self.assertIsNone(self.session.pending_request_id)
        self.assertEqual(len(self.session.queue), 0)
        self.assertEqual(self.session.confirmed_bets[Side.BAHAR], 700)

    def test_replayed_resubmit_clears_batch(self):
        self.session.add_chip(Side.BAHAR, 700)
        self.http.responses.append(requests.Timeout("read timed out"))
        with self.assertRaises(BetSubmissionIndeterminate):
            self.session.place_bets()

        self.http.responses.append(FakeResponse(200, {"new_balance": 9300, "round_sequence": 1, "replayed": True}))
        self.session.place_bets()
        self.assertEqual(self.session.balance, 9300)
        self.assertIsNone(self.session.pending_request_id)
        self.assertEqual(len(self.session.queue), 0)

    def test_connection_error_is_indeterminate(self):
        self.session.add_chip(Side.BAHAR, 700)
        self.http.responses.append(requests.ConnectionError("reset by peer"))
        with self.assertRaises(BetSubmissionIndeterminate):
            self.session.place_bets()

    def test_round_closed_rejection(self):
        self.session.add_chip(Side.ANDAR, 500)
        self.http.responses.append(FakeResponse(409, {
            "success": False,
            "error": {"code": "ROUND_CLOSED", "message": "Betting is closed for this round"},
        }))
        with self.assertRaises(BetRejected) as ctx:
            self.session.place_bets()
        self.assertEqual(ctx.exception.code, "ROUND_CLOSED")
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(self.session.last_error, "Betting is closed for this round")
        self.assertEqual(len(self.session.queue), 0)
        self.assertIsNone(self.session.pending_request_id)

    def test_non_json_error(self):
        self.session.add_chip(Side.ANDAR, 500)
        self.http.responses.append(FakeResponse(502, ValueError("not json")))
        with self.assertRaises(BetRejected) as ctx:
            self.session.place_bets()
        self.assertEqual(ctx.exception.code, "HTTP_502")
        self.assertEqual(len(self.session.queue), 1)

    def test_closed_round_blocks_staging(self):
        self.session.apply_event({"type": "round_state", "version": 2, "payload": round_state(status="CLOSED", version=2)})
        self.assertFalse(self.session.betting_open)
        with self.assertRaises(BetRejected):
            self.session.add_chip(Side.ANDAR, 100)

    def test_push_reconciliation(self):
        """Pushes older than the held version are ignored"""
        self.assertFalse(self.session.apply_event({"type": "balance", "version": 1, "payload": {"balance": 1}}))
        self.assertTrue(self.session.apply_event({"type": "balance", "version": 5, "payload": {"balance": 12000}}))
        self.assertFalse(self.session.apply_event({"type": "balance", "version": 4, "payload": {"balance": 8000}}))
        self.assertEqual(self.session.balance, 12000)

        self.assertFalse(self.session.apply_event({"type": "round_state", "version": 1, "payload": round_state(status="CLOSED")}))
        self.assertTrue(self.session.betting_open)
        self.assertFalse(self.session.apply_event({"type": "settlement_alert", "version": 9, "payload": {}}))

    def test_new_round_clears_staged_chips(self):
        self.session.add_chip(Side.ANDAR, 500)
        self.session.confirmed_bets[Side.BAHAR] = 300
        self.session.apply_event({"type": "round_state", "version": 4, "payload": round_state(sequence=2, version=4)})
        self.assertEqual(self.session.sequence, 2)
        self.assertEqual(len(self.session.queue), 0)
        self.assertEqual(self.session.confirmed_bets, {Side.ANDAR: 0, Side.BAHAR: 0})


if __name__ == "__main__":
    unittest.main()
