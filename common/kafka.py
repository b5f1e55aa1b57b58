from confluent_kafka import Producer
from common.settings import settings

TOPIC_ROUND_EVENTS   = "round_events"
TOPIC_BALANCE_EVENTS = "balance_events"
TOPIC_ALERT_EVENTS   = "settlement_alerts"

TOPIC_BY_EVENT_TYPE = {
    "round_state": TOPIC_ROUND_EVENTS,
    "balance": TOPIC_BALANCE_EVENTS,
    "settlement_alert": TOPIC_ALERT_EVENTS,
}

_producer = None

def get_producer() -> Producer:
    global _producer
    if _producer is None:
        _producer = Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})
    return _producer

def publish(event_type: str, key: str, value: bytes, timeout: float = 10.0):
    """Publish one event keyed by room/account so per-key order holds within a partition."""
    producer = get_producer()
    producer.produce(TOPIC_BY_EVENT_TYPE[event_type], key=key.encode("utf-8"), value=value)
    remaining = producer.flush(timeout)
    if remaining:
        raise RuntimeError(f"{remaining} message(s) still queued for {event_type}:{key}")
