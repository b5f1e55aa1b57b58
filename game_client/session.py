"""
Player Session
Client-side view of one player in one room: staged chips, confirmed balance
and round state kept in step with the server's change feed.
"""
import logging
import uuid
from typing import Dict, List, Optional, Tuple

import requests

from common.schemas import BettingStatus, Side

logger = logging.getLogger(__name__)

class BetRejected(Exception):
    """The server refused the batch; nothing was debited."""

    def __init__(self, code: str, message: str, status_code: int = None):
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(f"{code}: {message}")

class BetSubmissionIndeterminate(Exception):
    """No response arrived, so the batch may or may not have been placed.

    Resync, then resubmit: the session keeps ``request_id`` and the server
    answers a repeat with the original result.
    """

    def __init__(self, request_id: str, original_error: Exception = None):
        self.request_id = request_id
        self.original_error = original_error
        super().__init__(f"Outcome of bet request {request_id} unknown: {original_error}")

class StakeQueue:
    """Chips staged locally before placement. Undo only ever touches this queue."""

    def __init__(self):
        self._chips: List[Tuple[Side, int]] = []

    def add(self, side, amount: int):
        if amount <= 0:
            raise ValueError("chip amount must be positive")
        self._chips.append((Side(side), amount))

    def undo(self) -> Optional[Tuple[Side, int]]:
        if not self._chips:
            return None
        return self._chips.pop()

    def clear(self):
        self._chips = []

    def totals(self) -> Dict[Side, int]:
        totals = {Side.ANDAR: 0, Side.BAHAR: 0}
        for side, amount in self._chips:
            totals[side] += amount
        return totals

    def total(self) -> int:
        return sum(amount for _, amount in self._chips)

    def stakes(self) -> List[dict]:
        return [{"side": side.value, "amount": amount} for side, amount in self.totals().items() if amount]

    def __len__(self):
        return len(self._chips)

class PlayerSession:
    def __init__(self, base_url: str, account_id: str, room_id: str, token: str,
                 http=None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.account_id = account_id
        self.room_id = room_id
        self.token = token
        self.http = http or requests.Session()
        self.timeout = timeout

        self.queue = StakeQueue()
        self.round: Optional[dict] = None
        self.round_version = 0
        self.balance: Optional[int] = None
        self.balance_version = 0
        self.confirmed_bets = {Side.ANDAR: 0, Side.BAHAR: 0}
        # Exact payload of a submission whose outcome is not yet known
        self.pending_batch: Optional[dict] = None
        self.last_error: Optional[str] = None

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    def _get(self, path: str) -> dict:
        resp = self.http.get(f"{self.base_url}{path}", headers=self._headers(), timeout=self.timeout)
        if resp.status_code != 200:
            raise _rejection(resp)
        return resp.json()

    @property
    def sequence(self) -> Optional[int]:
        return self.round["sequence"] if self.round else None

    @property
    def betting_open(self) -> bool:
        return bool(self.round) and self.round["status"] == BettingStatus.OPEN.value

    def predicted_balance(self) -> Optional[int]:
        """Confirmed balance minus staged chips. Display only; never sent to the server."""
        if self.balance is None:
            return None
        return self.balance - self.queue.total()

    def resync(self) -> dict:
        """Replace local state with the server snapshot (round, balance, own bets).

        A batch left pending by a lost response is dropped when the snapshot
        already shows its stakes; otherwise it stays queued for resubmission.
        """
        snapshot = self._get(f"/rooms/{self.room_id}/snapshot")
        previous = dict(self.confirmed_bets)
        self._set_round(snapshot["round"])
        self.balance = snapshot["balance"]
        self.balance_version = snapshot.get("balance_version", self.balance_version)
        bets = snapshot["bets"]
        self.confirmed_bets = {Side.ANDAR: bets["andar"], Side.BAHAR: bets["bahar"]}
        if self.pending_batch is not None and self._committed(self.pending_batch, previous):
            logger.info(f"✅ Pending bet {self.pending_request_id} was committed before the response was lost")
            self._resolve_pending()
        logger.info(f"🔄 Resynced {self.account_id} in {self.room_id}: round {self.sequence}, balance {self.balance}")
        return snapshot

    def _committed(self, batch: dict, previous: Dict[Side, int]) -> bool:
        return all(
            self.confirmed_bets[Side(stake["side"])] - previous[Side(stake["side"])] >= stake["amount"]
            for stake in batch["stakes"]
        )

    def _ensure_nothing_pending(self):
        if self.pending_batch is not None:
            raise BetRejected("BET_PENDING", "Previous bet is still being confirmed; resubmit it or resync")

    def add_chip(self, side, amount: int) -> int:
        self._ensure_nothing_pending()
        if not self.betting_open:
            raise BetRejected("ROUND_CLOSED", "Betting is closed for this round")
        if self.balance is not None and amount > self.predicted_balance():
            raise BetRejected("INSUFFICIENT_BALANCE", "Insufficient balance")
        self.queue.add(side, amount)
        return self.predicted_balance()

    def undo(self):
        self._ensure_nothing_pending()
        return self.queue.undo()

    @property
    def pending_request_id(self) -> Optional[str]:
        return self.pending_batch["request_id"] if self.pending_batch else None

    def place_bets(self) -> Optional[dict]:
        """Submit every staged chip as one batch.

        While an earlier submission is unresolved the exact same payload is
        resent under its request id.
        """
        if self.pending_batch is None:
            if not len(self.queue):
                return None
            self.pending_batch = {
                "stakes": self.queue.stakes(),
                "round_sequence": self.sequence,
                "request_id": uuid.uuid4().hex,
            }
        payload = self.pending_batch
        request_id = payload["request_id"]
        try:
            resp = self.http.post(
                f"{self.base_url}/rooms/{self.room_id}/bets",
                json=payload, headers=self._headers(), timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning(f"⚠️ Bet request {request_id} got no response: {e}")
            raise BetSubmissionIndeterminate(request_id, e) from e

        if resp.status_code != 200:
            self.pending_batch = None
            error = _rejection(resp)
            self.last_error = error.message
            if error.code == "ROUND_CLOSED":
                self.queue.clear()
            raise error

        body = resp.json()
        if not body.get("replayed"):
            # A replay was already counted by the resync that preceded it
            for stake in payload["stakes"]:
                self.confirmed_bets[Side(stake["side"])] += stake["amount"]
        self._resolve_pending()
        self.balance = body["new_balance"]
        self.last_error = None
        return body

    def _resolve_pending(self):
        self.pending_batch = None
        self.queue.clear()

    def apply_event(self, event: dict) -> bool:
        """Apply one pushed change; returns False when it is older than what we hold."""
        kind = event.get("type")
        if kind == "round_state":
            if event["version"] <= self.round_version:
                return False
            self._set_round(event["payload"])
            return True
        if kind == "balance":
            if event["version"] <= self.balance_version:
                return False
            self.balance_version = event["version"]
            self.balance = event["payload"]["balance"]
            return True
        return False

    def _set_round(self, state: dict):
        if self.round is not None and state["sequence"] != self.round["sequence"]:
            # New round: staged chips and confirmed stakes belonged to the last one
            self.queue.clear()
            self.pending_batch = None
            self.confirmed_bets = {Side.ANDAR: 0, Side.BAHAR: 0}
        self.round = state
        self.round_version = state["version"]

def _rejection(resp) -> BetRejected:
    try:
        error = resp.json()["error"]
        return BetRejected(error["code"], error["message"], resp.status_code)
    except (ValueError, KeyError, TypeError):
        return BetRejected(f"HTTP_{resp.status_code}", resp.text, resp.status_code)
