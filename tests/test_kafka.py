import threading
from types import SimpleNamespace

import pytest

from fdinput.kafka import KafkaConfig, KafkaInput, assemble_source_id, disassemble_source_id


class FakeController:
    def __init__(self):
        self.events = []
        self.spread = False
        self.streams_disabled = False
        self.got_two = threading.Event()

    def use_spread(self):
        self.spread = True

    def disable_streams(self):
        self.streams_disabled = True

    def in_(self, source_id, source_name, offset, data, is_new_source):
        self.events.append((source_id, source_name, offset, data, is_new_source))
        if len(self.events) >= 2:
            self.got_two.set()


class FakeSession:
    def __init__(self):
        self.marks = []

    def mark_offset(self, topic, partition, offset, metadata):
        self.marks.append((topic, partition, offset, metadata))


class FakeGroup:
    def __init__(self, messages):
        self.messages = messages
        self.session = FakeSession()
        self.consume_calls = 0
        self.topics = None
        self.returned = threading.Event()

    def consume(self, topics, handler, cancelled):
        self.consume_calls += 1
        self.topics = list(topics)
        handler.setup(self.session)
        handler.consume_claim(self.session, self.messages)
        cancelled.wait(5)
        self.returned.set()


def test_assemble_source_id_round_trip():
    index = 123456789
    partition = 123
    assert disassemble_source_id(assemble_source_id(index, partition)) == (index, partition)


@pytest.mark.parametrize("index,partition", [(0, 0), (1, 65535), (2, 5), (65536, 1)])
def test_round_trip_various(index, partition):
    assert disassemble_source_id(assemble_source_id(index, partition)) == (index, partition)


def test_config_requires_brokers_and_topics():
    with pytest.raises(ValueError):
        KafkaConfig(brokers=[], topics=["a"])
    with pytest.raises(ValueError):
        KafkaConfig(brokers=["localhost:9092"], topics=[])
    assert KafkaConfig(brokers=["localhost:9092"], topics=["a"]).consumer_group == "file-d"


def start_input(messages):
    group = FakeGroup(messages)
    created = []

    def factory(brokers, group_id):
        created.append((list(brokers), group_id))
        return group

    controller = FakeController()
    plugin = KafkaInput(factory)
    plugin.start(KafkaConfig(brokers=["localhost:9092"], topics=["a", "b"]), controller)
    return plugin, group, controller, created


def test_start_consumes_messages():
    messages = [
        SimpleNamespace(topic="a", partition=0, offset=5, value=b'{"x":1}'),
        SimpleNamespace(topic="b", partition=3, offset=7, value=b'{"x":2}'),
    ]
    plugin, group, controller, created = start_input(messages)
    try:
        assert controller.got_two.wait(5)
        assert created == [(["localhost:9092"], "file-d")]
        assert controller.spread is True
        assert controller.streams_disabled is True
        assert group.topics == ["a", "b"]
        assert controller.events == [
            (assemble_source_id(0, 0), "kafka", 5, b'{"x":1}', True),
            (assemble_source_id(1, 3), "kafka", 7, b'{"x":2}', True),
        ]
    finally:
        plugin.stop()
    assert group.returned.wait(5)
    assert group.consume_calls == 1


def test_commit_marks_next_offset():
    plugin, group, controller, _ = start_input([
        SimpleNamespace(topic="a", partition=0, offset=1, value=b"1"),
        SimpleNamespace(topic="a", partition=0, offset=2, value=b"2"),
    ])
    try:
        assert controller.got_two.wait(5)
        plugin.commit(SimpleNamespace(source_id=assemble_source_id(1, 3), offset=41))
        assert group.session.marks == [("b", 3, 42, "")]
    finally:
        plugin.stop()


def test_commit_without_session_marks_nothing():
    plugin, group, controller, _ = start_input([
        SimpleNamespace(topic="a", partition=0, offset=1, value=b"1"),
        SimpleNamespace(topic="a", partition=0, offset=2, value=b"2"),
    ])
    try:
        assert controller.got_two.wait(5)
        plugin.cleanup(group.session)
        plugin.commit(SimpleNamespace(source_id=assemble_source_id(0, 0), offset=1))
        assert group.session.marks == []
    finally:
        plugin.stop()