"""Kafka producer for publishing settlement events."""

from confluent_kafka import Producer

from .logger import get_logger
from .schemas import SettlementEvent

logger = get_logger("producer")


class SettlementEventProducer:
    """Kafka producer for publishing settlement events.

    Events are keyed by order id so that every event of one order lands on the
    same partition and is consumed in order.

    Attributes:
        _producer: The underlying Kafka producer instance.
    """

    def __init__(self, bootstrap_servers: str):
        """Initialize the Kafka producer with the given bootstrap servers.

        Args:
            bootstrap_servers (str): Comma-separated list of Kafka broker addresses.
        """
        self._producer = Producer(
            {
                "bootstrap.servers": bootstrap_servers,
                "message.timeout.ms": 5000,
                "partitioner": "consistent_random",
            }
        )

    @property
    def producer(self):
        return self._producer

    def _delivery_callback(self, err, msg):
        """Callback function for message delivery reports.

        Args:
            err: Error that occurred during message delivery, if any.
            msg: Message that was delivered or failed.
        """
        if err:
            logger.bind(topic=msg.topic(), key=msg.key()).error(f"Event failed delivery: {err}")
        else:
            logger.bind(offset=msg.offset()).debug(f"Event delivered to {msg.topic()} [p:{msg.partition()}]")

    def publish(self, event: SettlementEvent):
        """Publish a settlement event to its topic.

        Args:
            event (SettlementEvent): The event to publish.

        Raises:
            BufferError: If the producer's internal buffer is full.
        """
        try:
            self._producer.produce(
                topic=event.topic,
                key=str(event.order_id).encode("utf-8"),
                value=event.model_dump_json(),
                on_delivery=self._delivery_callback,
            )
            self._producer.poll(0)
        except BufferError:
            logger.warning("Producer buffer full, flushing...")
            self._producer.flush()
            raise

    def flush(self, timeout: float = 5.0) -> int:
        """Wait for outstanding deliveries; returns the number still queued."""
        return self._producer.flush(timeout)

    def close(self):
        remaining = self.flush()
        if remaining:
            logger.warning(f"{remaining} settlement events were not delivered before shutdown")
