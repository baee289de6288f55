import threading
import time
from dataclasses import dataclass

import pytest

from fdinput.k8s_input import DECODER_CRI, DECODER_JSON, K8sInput
from fdinput.k8s_meta import MetaStore
from fdinput.multiline import K8sConfig
from fdinput.offsets import OffsetDB

CID = "4e0301b633eaa2bfdcafdeba59ba0c72a3815911a6a820bf273534b0f32d98e0"


class Controller:
    def __init__(self):
        self.decoders = []
        self.events = []
        self._lock = threading.Lock()

    def suggest_decoder(self, decoder):
        self.decoders.append(decoder)

    def disable_streams(self):
        pass

    def in_(self, source_id, source_name, offset, data, is_virgin):
        with self._lock:
            self.events.append((source_id, source_name, offset, bytes(data), is_virgin))
            return len(self.events)


@dataclass
class Event:
    source_id: int
    seq_id: int
    offset: int
    stream_name: str = "not_set"

    def is_regular_kind(self):
        return True


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def make_config(tmp_path):
    logs = tmp_path / "logs"
    logs.mkdir()
    return K8sConfig(offsets_file=str(tmp_path / "offsets.yaml"), watching_dir=str(logs))


def pod(namespace, name, cid):
    return {
        "metadata": {"namespace": namespace, "name": name, "labels": {}},
        "status": {"containerStatuses": [{"containerID": "containerd://" + cid}]},
    }


@pytest.mark.parametrize(
    "cri_type, expected",
    [("docker", DECODER_JSON), ("containerd", DECODER_CRI)],
)
def test_decoder_follows_runtime(tmp_path, cri_type, expected):
    controller = Controller()
    store = MetaStore(maintenance_interval=60.0)
    k8s = K8sInput(store, cri_type)
    k8s.start(make_config(tmp_path), controller, f"pipe_{cri_type}")
    try:
        assert controller.decoders == [expected]
    finally:
        k8s.stop()
        store.stop_maintenance()


def test_reads_log_lines_and_saves_committed_offset(tmp_path):
    config = make_config(tmp_path)
    line = b'{"log":"hello\\n","stream":"stdout"}\n'
    log_file = tmp_path / "logs" / f"pod_ns_container-{CID}.log"
    log_file.write_bytes(line)

    controller = Controller()
    store = MetaStore(maintenance_interval=60.0)
    k8s = K8sInput(store)
    k8s.start(config, controller, "pipe_read")
    try:
        assert wait_for(lambda: len(controller.events) == 1)
        source_id, source_name, offset, data, _ = controller.events[0]
        assert data == line
        assert source_name == str(log_file)
        assert offset == len(line)
        k8s.commit(Event(source_id=source_id, seq_id=1, offset=offset))
    finally:
        k8s.stop()
        store.stop_maintenance()

    saved = OffsetDB(config.offsets_file, config.offsets_file + ".tmp").load()
    assert saved[source_id].streams["not_set"] == len(line)


def test_start_runs_meta_maintenance(tmp_path):
    store = MetaStore(expire_duration=0.05, maintenance_interval=0.05)
    store.put_meta(pod("sre", "checker", CID))
    assert store.total_items() == 1

    k8s = K8sInput(store)
    k8s.start(make_config(tmp_path), Controller(), "pipe_maintenance")
    try:
        assert wait_for(lambda: store.total_items() == 0)
    finally:
        k8s.stop()
        store.stop_maintenance()


def test_commit_before_start_raises():
    k8s = K8sInput(MetaStore())
    with pytest.raises(RuntimeError):
        k8s.commit(Event(source_id=1, seq_id=1, offset=1))


def test_stop_before_start_leaves_input_unstarted():
    k8s = K8sInput(MetaStore())
    k8s.stop()
    assert k8s.file_input is None
    assert k8s.config is None