"""Test configuration and fixtures."""
import copy
from pathlib import Path

import pytest
import yaml

from hfsc_qos.core.config import DEFAULT_CONFIG, QoSConfig
from hfsc_qos.utils import cmd_runner
from tests.utils.fake_backends import TC_CLASS_STATS, RecordingMarking, RecordingShaper


@pytest.fixture
def config_data(tmp_path: Path):
    """Default configuration with state kept under tmp_path."""
    data = copy.deepcopy(DEFAULT_CONFIG)
    data["state_path"] = str(tmp_path / "state" / "last_applied.json")
    return data


@pytest.fixture
def qos_yaml(tmp_path: Path, config_data):
    """Write a qos.yaml for loading tests."""
    path = tmp_path / "qos.yaml"
    with path.open("w") as f:
        yaml.safe_dump(config_data, f)
    return path


@pytest.fixture
def qos_config(config_data):
    return QoSConfig.from_mapping(config_data)


@pytest.fixture
def shaper():
    return RecordingShaper(counters=TC_CLASS_STATS)


@pytest.fixture
def marking():
    return RecordingMarking()


@pytest.fixture
def fake_runner():
    """Install a FakeSubprocess as the process-wide command runner."""
    from tests.utils.fake_subprocess import FakeSubprocess

    fake = FakeSubprocess()
    cmd_runner.set_runner(fake)
    yield fake
    cmd_runner.reset_runner()
