from __future__ import annotations

import json
import logging
import threading
import time

from kafka import KafkaProducer
from kafka.errors import KafkaError, NoBrokersAvailable

from .executor import CheckResult

LOGGER = logging.getLogger("library_tank.publisher")

CONNECT_TIMEOUT_S = 60.0


class ResultPublisherError(Exception):
    """Raised when the Kafka result publisher cannot be set up."""


def create_producer(broker: str, connect_timeout_s: float = CONNECT_TIMEOUT_S) -> KafkaProducer:
    backoff = 1.0
    max_backoff = 10.0
    deadline = time.time() + connect_timeout_s

    while True:
        try:
            return KafkaProducer(
                bootstrap_servers=broker,
                key_serializer=lambda v: v.encode("utf-8") if v else None,
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            )
        except NoBrokersAvailable as exc:
            if time.time() >= deadline:
                raise ResultPublisherError(
                    f"failed to connect to Kafka broker within {connect_timeout_s:.0f} seconds"
                ) from exc

            LOGGER.info("Kafka broker %s not reachable yet, retrying in %.1fs", broker, backoff)
            time.sleep(backoff)
            backoff = min(backoff * 1.5, max_backoff)


class KafkaResultPublisher:
    """Forwards every check result as a JSON message to a Kafka topic."""

    def __init__(self, producer: KafkaProducer, topic: str, run_name: str) -> None:
        self._producer = producer
        self._topic = topic
        self._run_name = run_name
        self._counts_lock = threading.Lock()
        self.published = 0
        self.failed = 0

    @classmethod
    def connect(cls, broker: str, topic: str, run_name: str) -> "KafkaResultPublisher":
        return cls(create_producer(broker), topic, run_name)

    def __call__(self, result: CheckResult) -> None:
        payload = result.to_dict()
        payload["run"] = self._run_name
        key = f"{self._run_name}-{result.vu}-{result.iteration}"
        future = self._producer.send(self._topic, key=key, value=payload)
        future.add_callback(self._on_sent)
        future.add_errback(self._on_error)

    def close(self, timeout_s: float = 10.0) -> None:
        try:
            self._producer.flush(timeout=timeout_s)
        except KafkaError:
            LOGGER.exception("failed to flush results to %s", self._topic)
        finally:
            self._producer.close()
        LOGGER.info(
            "Published %d check results to %s (%d failed)",
            self.published,
            self._topic,
            self.failed,
        )

    # Delivery callbacks run on the producer's I/O thread.
    def _on_sent(self, _metadata) -> None:
        with self._counts_lock:
            self.published += 1

    def _on_error(self, exc: BaseException) -> None:
        with self._counts_lock:
            self.failed += 1
        LOGGER.warning("failed to publish check result: %r", exc)


__all__ = ["KafkaResultPublisher", "ResultPublisherError", "create_producer"]
