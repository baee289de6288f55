"""Kafka input: reads messages of several topics through a consumer group."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

_UINT64_MASK = (1 << 64) - 1


def assemble_source_id(index: int, partition: int) -> int:
    """Pack a topic index and a partition into one source id."""
    return ((index << 16) + partition) & _UINT64_MASK


def disassemble_source_id(source_id: int) -> tuple[int, int]:
    """Split a source id into the topic index and the partition."""
    return source_id >> 16, source_id & 0xFFFF


@dataclass
class KafkaConfig:
    """Brokers, topics and consumer group to read from."""

    brokers: list[str]
    topics: list[str]
    consumer_group: str = "file-d"

    def __post_init__(self) -> None:
        if not self.brokers:
            raise ValueError("brokers is required")
        if not self.topics:
            raise ValueError("topics is required")
        self.consumer_group = self.consumer_group or "file-d"


ConsumerGroupFactory = Callable[[list, str], Any]


class KafkaInput:
    """Feeds Kafka messages into the pipeline and marks committed offsets.

    ``consumer_group_factory(brokers, group)`` returns an object whose
    ``consume(topics, handler, cancelled)`` runs one consumer session,
    calling ``handler.setup``, ``handler.consume_claim`` and
    ``handler.cleanup``, and returns when the session ends or
    ``cancelled`` is set.
    """

    def __init__(self, consumer_group_factory: ConsumerGroupFactory) -> None:
        self._factory = consumer_group_factory
        self.config: KafkaConfig | None = None
        self._controller = None
        self._session = None
        self._group = None
        self._id_by_topic: dict[str, int] = {}
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self, config: KafkaConfig, controller) -> None:
        self.config = config
        self._controller = controller
        self._id_by_topic = {topic: i for i, topic in enumerate(config.topics)}
        self._cancelled = threading.Event()
        self._group = self._factory(config.brokers, config.consumer_group)
        controller.use_spread()
        controller.disable_streams()

        self._thread = threading.Thread(target=self._consume, name="kafka-input", daemon=True)
        self._thread.start()

    def _consume(self) -> None:
        logger.info("kafka input reading from topics: %s", ",".join(self.config.topics))
        while True:
            try:
                self._group.consume(self.config.topics, self, self._cancelled)
            except Exception as e:  # the session is retried until stopped
                logger.error("can't consume from kafka: %s", e)
            if self._cancelled.is_set():
                return

    def stop(self) -> None:
        self._cancelled.set()

    def commit(self, event) -> None:
        session = self._session
        if session is None:
            logger.error("no kafka consumer session for event commit")
            return
        index, partition = disassemble_source_id(event.source_id)
        session.mark_offset(self.config.topics[index], partition, event.offset + 1, "")

    def setup(self, session) -> None:
        logger.info("kafka consumer created with brokers %r", ",".join(self.config.brokers))
        self._session = session

    def cleanup(self, session) -> None:
        self._session = None

    def consume_claim(self, session, messages: Iterable) -> None:
        for message in messages:
            source_id = assemble_source_id(self._id_by_topic.get(message.topic, 0), message.partition)
            self._controller.in_(source_id, "kafka", message.offset, message.value, True)