from unittest import mock

import pytest

from fdinput.filecfg import FileConfig, OffsetsOp, PersistenceMode


def make(**kwargs):
    return FileConfig(watching_dir="/var/log", offsets_file="/data/offsets.yaml", **kwargs)


def test_defaults():
    config = make()
    assert config.filename_pattern == "*"
    assert config.dir_pattern == "*"
    assert config.persistence_mode is PersistenceMode.ASYNC
    assert config.offsets_op is OffsetsOp.CONTINUE
    assert config.read_buffer_size == 131072
    assert config.max_files == 16384
    assert config.offsets_file_tmp == "/data/offsets.yaml.atomic"


def test_default_durations_match_explicit_strings():
    default = make()
    explicit = make(async_interval="1s", report_interval="10s", maintenance_interval="10s")
    assert default.async_interval == explicit.async_interval
    assert default.report_interval == explicit.report_interval
    assert default.maintenance_interval == default.report_interval
    assert default.report_interval == default.async_interval * 10


def test_empty_values_fall_back_to_defaults():
    config = make(offsets_op="", persistence_mode="", filename_pattern="")
    assert config.offsets_op is OffsetsOp.CONTINUE
    assert config.persistence_mode is PersistenceMode.ASYNC
    assert config.filename_pattern == "*"


def test_string_options_become_enums():
    config = make(persistence_mode="sync", offsets_op="tail")
    assert config.persistence_mode is PersistenceMode.SYNC
    assert config.offsets_op is OffsetsOp.TAIL
    assert make(offsets_op=OffsetsOp.RESET).offsets_op is OffsetsOp.RESET


def test_duration_parsing():
    assert make(async_interval="500ms").async_interval == 0.5
    assert make(async_interval="1m30s").async_interval == 90.0
    assert make(async_interval="0").async_interval == 0.0
    assert make(async_interval=3).async_interval == 3.0


def test_workers_count_expression():
    with mock.patch("os.cpu_count", return_value=2):
        assert make().workers_count == 16
    assert make(workers_count=5).workers_count == 5
    with mock.patch("os.cpu_count", return_value=3):
        assert make(workers_count="gomaxprocs").workers_count == 3


@pytest.mark.parametrize("field", ["watching_dir", "offsets_file"])
def test_required_fields(field):
    kwargs = {"watching_dir": "/var/log", "offsets_file": "/data/offsets.yaml", field: ""}
    with pytest.raises(ValueError, match=field):
        FileConfig(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"persistence_mode": "lazy"},
        {"offsets_op": "rewind"},
        {"async_interval": "1x"},
        {"async_interval": "s"},
        {"report_interval": "10"},
        {"workers_count": "gomaxprocs**"},
        {"workers_count": "cores*2"},
        {"workers_count": "8/0"},
    ],
)
def test_invalid_values(kwargs):
    with pytest.raises(ValueError):
        make(**kwargs)