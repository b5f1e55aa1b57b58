import hashlib
import json
import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from common.error_handling import RequestIdReused, TransientStoreError
from common.retry import retry_call, RetryConfig, STORE_RETRY_CONFIG, TRANSIENT_STORE_EXCEPTIONS
from common.settings import settings
from game_service.models import IdempotencyKey
from game_service.notifier import OutboxRelay

logger = logging.getLogger(__name__)

T = TypeVar("T")

class Store:
    """Runs units of work in one database transaction each, retrying lost races."""

    def __init__(self, session_factory, relay: Optional[OutboxRelay] = None, retry_config: Optional[RetryConfig] = None):
        self.session_factory = session_factory
        self.relay = relay
        self.retry_config = retry_config or STORE_RETRY_CONFIG.with_attempts(settings.store_retry_attempts)

    def transact(self, work: Callable[[Session], T], retry_config: Optional[RetryConfig] = None) -> T:
        def _attempt():
            with self.session_factory() as session:
                with session.begin():
                    return work(session)

        try:
            result = retry_call(_attempt, retry_config or self.retry_config)
        except tuple(TRANSIENT_STORE_EXCEPTIONS) as e:
            raise TransientStoreError("Store unavailable, retry later", original_error=e) from e

        if self.relay is not None:
            self.relay.drain_quietly()
        return result

    def read(self, work: Callable[[Session], T]) -> T:
        def _attempt():
            with self.session_factory() as session:
                return work(session)

        config = self.retry_config
        try:
            return retry_call(_attempt, RetryConfig(
                max_attempts=config.max_attempts,
                base_delay=config.base_delay,
                max_delay=config.max_delay,
                retryable_exceptions=[OperationalError],
            ))
        except OperationalError as e:
            raise TransientStoreError("Store unavailable, retry later", original_error=e) from e

def request_fingerprint(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()

def load_replay(session: Session, scope: str, request_id: Optional[str], fingerprint: Optional[str] = None) -> Optional[dict]:
    """Stored response for a repeated request id, or None for a new one.

    Raises RequestIdReused when the id was first used for a different body.
    """
    if not request_id:
        return None
    stored = session.execute(
        select(IdempotencyKey).where(IdempotencyKey.scope == scope, IdempotencyKey.request_id == request_id)
    ).scalar_one_or_none()
    if stored is None:
        return None
    if fingerprint and stored.request_hash and stored.request_hash != fingerprint:
        raise RequestIdReused(
            f"Request {request_id} was already used for a different {scope.split(':')[0]} request",
            field="request_id",
            context={"request_id": request_id},
        )
    logger.info(f"🔁 Replaying {scope} request {request_id}")
    return json.loads(stored.response)

def remember(session: Session, scope: str, request_id: Optional[str], response: dict, fingerprint: Optional[str] = None):
    """Store the result with the effect; a concurrent duplicate fails the flush and is retried as a replay."""
    if not request_id:
        return
    session.add(IdempotencyKey(
        scope=scope,
        request_id=request_id,
        response=json.dumps(response, default=str),
        request_hash=fingerprint,
    ))
    session.flush()
