"""
Realtime fan-out of committed changes.

Writers append events to the outbox table inside the transaction that makes
the change; OutboxRelay drains it in id order to in-process subscribers and,
when enabled, to Kafka.
"""
import json
import logging
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from common import kafka
from common.retry import retry_call, KAFKA_RETRY_CONFIG
from common.schemas import ChangeEvent
from common.settings import settings
from game_service.models import Outbox

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5

def enqueue(session: Session, event_type: str, key: str, version: int, payload: dict):
    """Record a change event; it is published only if the surrounding transaction commits."""
    session.add(Outbox(
        event_type=event_type,
        event_key=key,
        version=version,
        payload=json.dumps(payload, default=str),
    ))

class Notifier:
    """In-process subscriber registry with per-key monotonic delivery."""

    def __init__(self):
        self._subscribers: Dict[Tuple[str, str], List[Callable[[ChangeEvent], None]]] = defaultdict(list)
        self._delivered: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, key: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers[(event_type, key)].append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get((event_type, key), [])
                if callback in callbacks:
                    callbacks.remove(callback)
        return unsubscribe

    def deliver(self, event: ChangeEvent) -> bool:
        """Fan out one event. Redeliveries at or below the last delivered version are dropped."""
        topic = (event.type, event.key)
        with self._lock:
            if self._delivered.get(topic, 0) >= event.version:
                return False
            self._delivered[topic] = event.version
            callbacks = list(self._subscribers.get(topic, []))

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber failed for {event.type}:{event.key} v{event.version}")
        return True

class OutboxRelay:
    """Publishes outbox rows in id order to the notifier and, when enabled, Kafka."""

    def __init__(self, session_factory, notifier: Notifier, kafka_enabled: Optional[bool] = None, batch_size: int = 100):
        self.session_factory = session_factory
        self.notifier = notifier
        self.kafka_enabled = settings.kafka_enabled if kafka_enabled is None else kafka_enabled
        self.batch_size = batch_size
        self._lock = threading.Lock()

    def drain(self) -> int:
        """Publish pending rows; stops at the first Kafka failure so per-key order is kept."""
        sent = 0
        with self._lock:
            with self.session_factory() as db:
                while True:
                    rows = db.execute(
                        select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(self.batch_size)
                    ).scalars().all()
                    if not rows:
                        return sent
                    for row in rows:
                        event = ChangeEvent(
                            type=row.event_type,
                            key=row.event_key,
                            version=row.version,
                            payload=json.loads(row.payload),
                        )
                        if self.kafka_enabled:
                            try:
                                retry_call(kafka.publish, KAFKA_RETRY_CONFIG, event.type, event.key,
                                           event.model_dump_json().encode("utf-8"))
                            except Exception as e:
                                logger.error(f"❌ Kafka publish failed for outbox row {row.id}, will retry: {e}")
                                db.rollback()
                                return sent
                        self.notifier.deliver(event)
                        db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
                        db.commit()
                        sent += 1

    def drain_quietly(self) -> int:
        """Drain after a committed write; a failure here leaves rows for the background relay."""
        try:
            return self.drain()
        except Exception:
            logger.exception("Outbox drain failed; rows stay queued")
            return 0

    def run_forever(self, stop_event: threading.Event, poll_interval: float = POLL_INTERVAL):
        while not stop_event.is_set():
            self.drain_quietly()
            time.sleep(poll_interval)
