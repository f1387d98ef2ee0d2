from pathlib import Path

import pytest
import yaml
from jsonschema import ValidationError, validate

from conftest import CLUSTER
from rollctl.config import (
    DEFAULT_FACTORY_URL,
    ClusterConfig,
    RunOptions,
    Settings,
    find_default_config,
    load_config,
)
from rollctl.errors import ConfigError
from rollctl.modules.models import Node, NodeRole

EXAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "configs" / "talos-profiles.yaml"

PROFILE_SCHEMA = {
    "type": "object",
    "properties": {
        "arch": {"type": "string"},
        "platform": {"type": "string"},
        "secureboot": {"type": "boolean"},
        "kernel_args": {"type": "array", "items": {"type": "string"}},
        "extensions": {"type": "array", "items": {"type": "string"}},
        "overlay": {
            "type": "object",
            "properties": {"name": {"type": "string"}, "image": {"type": "string"}},
            "required": ["name", "image"],
        },
    },
    "required": ["arch", "platform"],
}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "settings": {"type": "object"},
        "profiles": {"type": "object", "additionalProperties": PROFILE_SCHEMA, "minProperties": 1},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "ip": {"type": "string"},
                    "profile": {"type": "string"},
                    "role": {"enum": ["controlplane", "worker"]},
                },
                "required": ["ip", "profile", "role"],
            },
        },
    },
    "required": ["profiles"],
}


def write_config(tmp_path, data):
    path = tmp_path / "talos-profiles.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def with_changes(**changes):
    data = dict(CLUSTER)
    data.update(changes)
    return data


def test_example_config_matches_schema():
    with open(EXAMPLE_CONFIG) as f:
        validate(instance=yaml.safe_load(f), schema=CONFIG_SCHEMA)


def test_schema_rejects_bad_role():
    bad = {"profiles": {"a": {"arch": "amd64", "platform": "metal"}},
           "nodes": [{"ip": "10.0.0.1", "profile": "a", "role": "master"}]}
    with pytest.raises(ValidationError):
        validate(instance=bad, schema=CONFIG_SCHEMA)


def test_example_config_loads():
    config = load_config(EXAMPLE_CONFIG)
    assert sorted(config.profiles) == ["amd-gpu", "intel-secureboot", "rpi"]
    assert config.profiles["rpi"].overlay.name == "rpi_generic"
    assert [n.address for n in config.nodes_by_profile("intel-secureboot")] == [
        "192.168.1.10", "192.168.1.11", "192.168.1.12",
    ]
    assert not config.has_detection()


def test_load_config_applies_defaults(tmp_path):
    data = with_changes()
    del data["settings"]
    config = load_config(write_config(tmp_path, data))
    assert config.settings.factory_base_url == DEFAULT_FACTORY_URL
    assert config.settings.default_timeout_seconds == 600
    assert config.settings.default_preserve is True
    assert config.profiles["amd-worker"].overlay is None


def test_blank_settings_fall_back_to_defaults():
    settings = Settings(factory_base_url="", default_timeout_seconds=0)
    assert settings.factory_base_url == DEFAULT_FACTORY_URL
    assert settings.default_timeout_seconds == 600


@pytest.mark.parametrize("data,message", [
    (with_changes(profiles={}), "no profiles defined"),
    (with_changes(profiles={"a": {"platform": "metal"}}, nodes=[]), "profile a: arch is required"),
    (with_changes(profiles={"a": {"arch": "amd64"}}, nodes=[]), "profile a: platform is required"),
    (with_changes(nodes=[]), "either nodes or detection rules must be defined"),
    (with_changes(nodes=[{"ip": "", "profile": "intel-cp", "role": "worker"}]), "node with empty IP found"),
    (with_changes(nodes=[{"ip": "10.0.0.1", "profile": "gpu", "role": "worker"}]),
     "node 10.0.0.1: references unknown profile gpu"),
    (with_changes(nodes=[{"ip": "10.0.0.1", "profile": "intel-cp", "role": "master"}]),
     "node 10.0.0.1: role must be 'controlplane' or 'worker', got master"),
    (with_changes(nodes=[], detection={"rules": [{"profile": "intel-cp", "match": {}}]}),
     "detection rule 0: at least one match criterion required"),
    (with_changes(nodes=[], detection={"rules": [{"profile": "gpu", "match": {"system_manufacturer": "x"}}]}),
     "detection rule 0: references unknown profile gpu"),
])
def test_invalid_configs(tmp_path, data, message):
    with pytest.raises(ConfigError) as exc:
        load_config(write_config(tmp_path, data))
    assert message in str(exc.value)


def test_detection_only_config_is_valid():
    config = ClusterConfig(**with_changes(
        nodes=[], detection={"rules": [{"profile": "intel-cp", "match": {"processor_manufacturer": "intel"}}]},
    ))
    assert config.has_detection()
    assert config.inventory() == []


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="failed to read config file"):
        load_config(tmp_path / "nope.yaml")


def test_unparseable_file(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("profiles: [unclosed\n")
    with pytest.raises(ConfigError, match="failed to parse config file"):
        load_config(path)


def test_non_mapping_file(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="expected a mapping"):
        load_config(path)


def test_default_config_from_env(tmp_path, monkeypatch):
    path = write_config(tmp_path, CLUSTER)
    monkeypatch.setenv("ROLLCTL_CONFIG", str(path))
    assert find_default_config() == path
    assert len(load_config().nodes) == 4


def test_no_default_config(tmp_path, monkeypatch):
    monkeypatch.delenv("ROLLCTL_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ConfigError, match="no config file found"):
        load_config()


def test_inventory_roles(config):
    roles = {n.address: n.role for n in config.inventory()}
    assert roles["10.0.0.11"] == NodeRole.CONTROLPLANE
    assert roles["10.0.0.9"] == NodeRole.WORKER


def test_profile_for_unknown(config):
    with pytest.raises(ConfigError):
        config.profile_for(Node(address="10.0.0.1", role=NodeRole.WORKER, profile="gpu"))


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DRY_RUN", "TALOS_VERSION", "PRESERVE"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_run_options_defaults(clean_env):
    options = RunOptions.from_env()
    assert not options.dry_run
    assert options.talos_version is None
    assert options.preserve is None
    assert options.resolved(Settings(default_preserve=False)).preserve is False


def test_run_options_from_env(clean_env):
    clean_env.setenv("DRY_RUN", "true")
    clean_env.setenv("TALOS_VERSION", "1.10.0")
    clean_env.setenv("PRESERVE", "false")
    options = RunOptions.from_env()
    assert options.dry_run
    assert options.talos_version == "1.10.0"
    assert options.preserve is False


def test_command_line_wins_over_env(clean_env):
    clean_env.setenv("TALOS_VERSION", "1.10.0")
    clean_env.setenv("PRESERVE", "false")
    options = RunOptions.from_env(talos_version="1.9.6", preserve=True)
    assert options.talos_version == "1.9.6"
    assert options.preserve is True
    assert options.resolved(Settings(default_preserve=False)).preserve is True
