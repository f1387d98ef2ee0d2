"""Configuration management for rollctl.

Profiles, the static node inventory, detection rules and engine settings are
read from a YAML file. Runtime switches (dry run, target version, preserve)
come from the command line with environment variable fallbacks, loaded from a
``.env`` file when present.
"""
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from rollctl.errors import ConfigError
from rollctl.modules.models import HardwareInfo, Node, NodeRole
from rollctl.utils import address_key

logger = logging.getLogger("rollctl.config")

# Search order when no explicit path is given ($ROLLCTL_CONFIG is checked first)
DEFAULT_CONFIG_PATHS = [
    Path("configs/talos-profiles.yaml"),
    Path("talos-profiles.yaml"),
]

DEFAULT_FACTORY_URL = "https://factory.talos.dev"
DEFAULT_RELEASES_URL = "https://api.github.com/repos/siderolabs/talos/releases/latest"
FALLBACK_VERSION = "1.9.5"
UNKNOWN_PROFILE = "unknown"


class Settings(BaseModel):
    """Global settings and engine tunables (all durations in seconds)."""
    model_config = ConfigDict(extra="ignore")

    factory_base_url: str = Field(default=DEFAULT_FACTORY_URL, description="Image factory base URL")
    default_timeout_seconds: int = Field(default=600, description="Overall per-node upgrade deadline")
    default_preserve: bool = Field(default=True, description="Preserve ephemeral data during upgrade")
    github_releases_url: str = Field(default=DEFAULT_RELEASES_URL, description="Latest release lookup URL")

    reconnect_poll_seconds: float = 2.0
    reconnect_window_seconds: float = 10.0
    service_timeout_seconds: float = 60.0
    static_pod_timeout_seconds: float = 90.0
    health_poll_seconds: float = 2.0
    event_poll_seconds: float = 0.25
    reachability_timeout_seconds: float = 5.0
    status_workers: int = 16

    talosctl_path: str = "talosctl"
    kubeconfig: Optional[str] = None

    @field_validator("factory_base_url", "github_releases_url", mode="before")
    @classmethod
    def default_when_blank(cls, v, info):
        """Empty strings fall back to the defaults."""
        if v in (None, ""):
            return DEFAULT_FACTORY_URL if info.field_name == "factory_base_url" else DEFAULT_RELEASES_URL
        return v

    @field_validator("default_timeout_seconds", mode="before")
    @classmethod
    def default_timeout(cls, v):
        return 600 if v in (None, 0) else v


class Overlay(BaseModel):
    """Board overlay for single-board computers."""
    name: str
    image: str


class Profile(BaseModel):
    """Declared target configuration for a class of nodes."""
    model_config = ConfigDict(frozen=True)

    description: str = ""
    arch: str = ""
    platform: str = ""
    secureboot: bool = False
    kernel_args: List[str] = Field(default_factory=list)
    extensions: List[str] = Field(default_factory=list)
    overlay: Optional[Overlay] = None


class NodeEntry(BaseModel):
    """A node from the static inventory."""
    ip: str = ""
    profile: str = ""
    role: str = ""

    def to_node(self) -> Node:
        return Node(address=self.ip, role=NodeRole(self.role), profile=self.profile)


class DetectionMatch(BaseModel):
    """Case-insensitive substring criteria; every non-empty one must match."""
    system_manufacturer: str = ""
    processor_manufacturer: str = ""

    def is_empty(self) -> bool:
        return not self.system_manufacturer and not self.processor_manufacturer

    def matches(self, hw: HardwareInfo) -> bool:
        if self.is_empty():
            return False
        if self.system_manufacturer and \
                self.system_manufacturer.lower() not in (hw.system_manufacturer or "").lower():
            return False
        if self.processor_manufacturer and \
                self.processor_manufacturer.lower() not in (hw.processor_manufacturer or "").lower():
            return False
        return True


class DetectionRule(BaseModel):
    profile: str = ""
    match: DetectionMatch = Field(default_factory=DetectionMatch)


class Detection(BaseModel):
    rules: List[DetectionRule] = Field(default_factory=list)


class ClusterConfig(BaseModel):
    """The complete configuration file."""
    settings: Settings = Field(default_factory=Settings)
    profiles: Dict[str, Profile] = Field(default_factory=dict)
    nodes: List[NodeEntry] = Field(default_factory=list)
    detection: Optional[Detection] = None

    @field_validator("settings", mode="before")
    @classmethod
    def settings_or_default(cls, v):
        return {} if v is None else v

    @model_validator(mode="after")
    def validate_config(self) -> "ClusterConfig":
        """Check cross references between profiles, nodes and detection rules."""
        if not self.profiles:
            raise ValueError("no profiles defined")

        for name, profile in self.profiles.items():
            if not profile.arch:
                raise ValueError(f"profile {name}: arch is required")
            if not profile.platform:
                raise ValueError(f"profile {name}: platform is required")

        if not self.nodes and not self.has_detection():
            raise ValueError("either nodes or detection rules must be defined")

        for node in self.nodes:
            if not node.ip:
                raise ValueError("node with empty IP found")
            if not node.profile:
                raise ValueError(f"node {node.ip}: profile is required")
            if node.profile not in self.profiles:
                raise ValueError(f"node {node.ip}: references unknown profile {node.profile}")
            if node.role not in (NodeRole.CONTROLPLANE.value, NodeRole.WORKER.value):
                raise ValueError(
                    f"node {node.ip}: role must be 'controlplane' or 'worker', got {node.role}"
                )

        if self.detection is not None:
            for i, rule in enumerate(self.detection.rules):
                if not rule.profile:
                    raise ValueError(f"detection rule {i}: profile is required")
                if rule.profile not in self.profiles:
                    raise ValueError(f"detection rule {i}: references unknown profile {rule.profile}")
                if rule.match.is_empty():
                    raise ValueError(f"detection rule {i}: at least one match criterion required")

        return self

    def has_detection(self) -> bool:
        return self.detection is not None and len(self.detection.rules) > 0

    def detect_profile(self, hw: HardwareInfo) -> Tuple[Optional[str], Optional[Profile]]:
        """Return the first profile whose detection rule matches ``hw``."""
        if not self.has_detection():
            return None, None
        for rule in self.detection.rules:
            if rule.match.matches(hw):
                return rule.profile, self.profiles.get(rule.profile)
        return None, None

    def inventory(self) -> List[Node]:
        """Static nodes sorted by address."""
        nodes = [entry.to_node() for entry in self.nodes]
        return sorted(nodes, key=lambda n: address_key(n.address))

    def nodes_by_profile(self, profile: str) -> List[Node]:
        return [n for n in self.inventory() if n.profile == profile]

    def profile_for(self, node: Node) -> Profile:
        try:
            return self.profiles[node.profile]
        except KeyError:
            raise ConfigError(f"unknown profile: {node.profile}")


def find_default_config() -> Optional[Path]:
    """Return the first existing default config path."""
    env_path = os.getenv("ROLLCTL_CONFIG")
    candidates = ([Path(env_path)] if env_path else []) + DEFAULT_CONFIG_PATHS
    for path in candidates:
        path = path.expanduser()
        if path.exists():
            return path
    return None


def load_config(path: Optional[Union[str, Path]] = None) -> ClusterConfig:
    """Load and validate the configuration file.

    Args:
        path: Explicit config path; default locations are searched when omitted

    Returns:
        Validated ClusterConfig

    Raises:
        ConfigError: If no file is found or it cannot be read or validated
    """
    if path:
        config_path = Path(path).expanduser()
    else:
        config_path = find_default_config()
        if config_path is None:
            tried = ", ".join(str(p) for p in DEFAULT_CONFIG_PATHS)
            raise ConfigError(f"no config file found, tried: {tried}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"failed to read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"invalid config file {config_path}: expected a mapping")

    try:
        config = ClusterConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid config: {_first_error(e)}") from e

    logger.debug("Loaded config from %s (%d profiles, %d nodes)",
                 config_path, len(config.profiles), len(config.nodes))
    return config


def _first_error(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    msg = errors[0].get("msg", str(e))
    # pydantic prefixes errors raised from validators
    return msg.replace("Value error, ", "", 1)


@dataclass(frozen=True)
class RunOptions:
    """Per-invocation switches, threaded explicitly through every command.

    ``preserve`` is None until resolved against ``settings.default_preserve``.
    """
    config_path: Optional[str] = None
    dry_run: bool = False
    talos_version: Optional[str] = None
    preserve: Optional[bool] = None
    debug: bool = False

    @classmethod
    def from_env(
        cls,
        config_path: Optional[str] = None,
        dry_run: bool = False,
        talos_version: Optional[str] = None,
        preserve: Optional[bool] = None,
        debug: bool = False,
    ) -> "RunOptions":
        """Merge command-line values with DRY_RUN, TALOS_VERSION and PRESERVE."""
        load_dotenv()
        if os.getenv("DRY_RUN", "").lower() == "true":
            dry_run = True
        if not talos_version:
            talos_version = os.getenv("TALOS_VERSION") or None
        if preserve is None and os.getenv("PRESERVE"):
            preserve = os.getenv("PRESERVE", "").lower() != "false"
        return cls(
            config_path=config_path,
            dry_run=dry_run,
            talos_version=talos_version,
            preserve=preserve,
            debug=debug,
        )

    def resolved(self, settings: Settings) -> "RunOptions":
        """Fill in values left to the config file."""
        if self.preserve is None:
            return replace(self, preserve=settings.default_preserve)
        return self
