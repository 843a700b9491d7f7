from pathlib import Path

import pytest
import yaml

from hfsc_qos.core import config as config_module
from hfsc_qos.core.config import CONFIG_PATH_ENV, QoSConfig
from hfsc_qos.core.errors import ConfigError
from hfsc_qos.core.models import MatchSpec, PriorityClass, TierKind


def test_config_from_file(qos_yaml: Path):
    cfg = QoSConfig.from_file(qos_yaml)
    assert cfg.source == qos_yaml
    assert cfg.wan_interface == "eth0"
    assert cfg.capacity.rate_kbps == 1000
    assert cfg.download_kbps == 10000
    assert [t.id for t in cfg.reserved] == [10, 20]
    assert all(t.kind is TierKind.RESERVED for t in cfg.reserved)
    assert cfg.tiers[0].priority is PriorityClass.REALTIME_BURSTABLE
    assert cfg.default.share_percent is None
    assert cfg.get("rtt_ms") == 50
    assert cfg.get("missing", "default") == "default"


def test_partial_file_is_merged_over_defaults(tmp_path: Path):
    path = tmp_path / "qos.yaml"
    path.write_text(yaml.safe_dump({"interfaces": {"wan": "wan0"}, "default": {"id": 999, "label": "Rest"}}))
    cfg = QoSConfig.from_file(path)
    assert cfg.wan_interface == "wan0"
    assert cfg.lan_interface == "br-lan"
    assert cfg.default.label == "Rest"
    assert cfg.default.priority is PriorityClass.BULK
    assert len(cfg.tiers) == 3


def test_empty_file_uses_defaults(tmp_path: Path):
    path = tmp_path / "qos.yaml"
    path.write_text("")
    assert QoSConfig.from_file(path).mark_chain == "QOS_MARK"


def test_matches_are_parsed(qos_config):
    interactive = qos_config.matches[10]
    assert interactive[0] == MatchSpec.port("tcp", 22, None, side="dport")
    assert interactive[1].side == "sport"
    assert interactive[4] == MatchSpec.protocol_only("icmp")
    voip = qos_config.matches[20]
    assert (voip[1].port_start, voip[1].port_end) == (10000, 20000)
    assert qos_config.matches[100] == (MatchSpec.for_address("192.168.99.3/32", None),)
    assert 999 not in qos_config.matches


def test_address_list_and_explicit_match(config_data):
    config_data["tiers"][1]["addresses"] = ["10.0.0.1", "10.0.0.2"]
    config_data["tiers"][2]["matches"] = [{"dst": "203.0.113.0/24"}, {"protocol": "tcp", "sport": "8000-8080"}]
    cfg = QoSConfig.from_mapping(config_data)
    assert cfg.matches[200] == (MatchSpec.for_address("10.0.0.1,10.0.0.2", None),)
    assert cfg.matches[300][0] == MatchSpec.for_address("203.0.113.0/24", "dst")
    assert cfg.matches[300][1] == MatchSpec.port("tcp", 8000, 8080, side="sport")
    assert cfg.matches[300][2].kind == "address"


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda d: d.update(leaf_qdisc="fq_codel"), "leaf_qdisc"),
        (lambda d: d["bandwidth"].update(upload_kbps=0), "bandwidth/upload_kbps"),
        (lambda d: d.update(bogus=True), "Additional properties"),
        (lambda d: d["tiers"][0].update(colour="red"), "tiers/0"),
        (lambda d: d["reserved"][0]["matches"].append({"protocol": "gre", "dport": 1}), "reserved/0/matches"),
    ],
)
def test_schema_errors(config_data, mutate, message):
    mutate(config_data)
    with pytest.raises(ConfigError, match=message):
        QoSConfig.from_mapping(config_data)


@pytest.mark.parametrize(
    "match, message",
    [
        ({"protocol": "udp", "dport": "70000"}, "out of range"),
        ({"protocol": "udp", "dport": "20:10"}, "reversed"),
        ({"protocol": "udp", "dport": "ssh"}, "Invalid port"),
        ({"protocol": "icmp", "dport": 1}, "has no ports"),
        ({"dport": 22}, "needs a protocol"),
        ({"protocol": "tcp", "dport": 22, "sport": 22}, "one entry per side"),
    ],
)
def test_match_errors(config_data, match, message):
    config_data["reserved"][0]["matches"] = [match]
    with pytest.raises(ConfigError, match=message):
        QoSConfig.from_mapping(config_data)


def test_unknown_priority(config_data):
    config_data["tiers"][0]["priority"] = "urgent"
    with pytest.raises(ConfigError, match="Unknown priority"):
        QoSConfig.from_mapping(config_data)


def test_priority_aliases():
    assert PriorityClass.parse("realtime") is PriorityClass.REALTIME_STRICT
    assert PriorityClass.parse("Interactive") is PriorityClass.REALTIME_BURSTABLE
    assert PriorityClass.parse("normal") is PriorityClass.SHARED
    assert PriorityClass.parse("realtime-burstable") is PriorityClass.REALTIME_BURSTABLE


def test_invalid_yaml(tmp_path: Path):
    path = tmp_path / "qos.yaml"
    path.write_text("interfaces: [wan\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        QoSConfig.from_file(path)


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="Cannot read"):
        QoSConfig.from_file(tmp_path / "nope.yaml")


def test_non_mapping_root(tmp_path: Path):
    path = tmp_path / "qos.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ConfigError, match="mapping"):
        QoSConfig.from_file(path)


def test_load_order(monkeypatch, qos_yaml, tmp_path: Path):
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    monkeypatch.delenv(CONFIG_PATH_ENV, raising=False)
    assert QoSConfig.load().source is None

    monkeypatch.setenv(CONFIG_PATH_ENV, str(qos_yaml))
    assert QoSConfig.load().source == qos_yaml

    other = tmp_path / "other.yaml"
    other.write_text(yaml.safe_dump({"interfaces": {"wan": "ppp0"}}))
    assert QoSConfig.load(other).wan_interface == "ppp0"


def test_config_is_immutable(qos_config):
    with pytest.raises(AttributeError):
        qos_config.rtt_ms = 10
    with pytest.raises(TypeError):
        qos_config.matches[10] = ()


def test_example_config_matches_defaults():
    example = Path(__file__).resolve().parents[2] / "configs" / "qos.yaml"
    cfg = QoSConfig.from_file(example)
    defaults = QoSConfig.from_mapping({})
    assert cfg.matches == defaults.matches
    assert cfg.tiers == defaults.tiers
    assert cfg.reserved == defaults.reserved
    assert cfg.tc_path == "/sbin/tc"
