"""
Configuration module for extension auto-registration.

Loads configuration from environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional


def parse_labels(value: Optional[str], env_name: str = "labels") -> Dict[str, str]:
    """
    Parse a label selector from its environment representation.

    Accepts a JSON list of ``{"key": ..., "value": ...}`` objects or a plain
    JSON object. Empty values and ``[]`` yield no labels.

    Raises:
        ValueError: If the value is not valid JSON or has the wrong shape
    """
    if not value or not value.strip() or value.strip() == "[]":
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{env_name} must be valid JSON: {e}")

    if isinstance(parsed, dict):
        return {str(k): str(v) for k, v in parsed.items()}
    if isinstance(parsed, list):
        labels = {}
        for item in parsed:
            if not isinstance(item, dict) or "key" not in item:
                raise ValueError(
                    f"{env_name} entries must be objects with 'key' and 'value'"
                )
            labels[str(item["key"])] = str(item.get("value", ""))
        return labels
    raise ValueError(f"{env_name} must be a JSON list or object")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RegistrarConfig:
    """Connection to the local agent's extension registry."""

    agent_key: str = field(default="", repr=False)  # Never log the key
    agent_host: str = "localhost"
    agent_port: int = 42899
    request_timeout: float = 10.0

    @property
    def base_url(self) -> str:
        return f"http://{self.agent_host}:{self.agent_port}"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        agent_key = os.getenv("AGENT_KEY", "")
        if not agent_key:
            raise ValueError(
                "AGENT_KEY environment variable must be set. "
                "The agent rejects registrations without it."
            )

        return cls(
            agent_key=agent_key,
            agent_host=os.getenv("AGENT_HOST", "localhost"),
            agent_port=int(os.getenv("AGENT_PORT", "42899")),
            request_timeout=float(os.getenv("AGENT_REQUEST_TIMEOUT", "10")),
        )


@dataclass
class DiscoveryConfig:
    """Which workloads are candidates for registration."""

    match_labels: Dict[str, str] = field(default_factory=dict)
    match_labels_exclude: Dict[str, str] = field(default_factory=dict)
    namespace_filter: str = ""

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            match_labels=parse_labels(os.getenv("MATCH_LABELS"), "MATCH_LABELS"),
            match_labels_exclude=parse_labels(
                os.getenv("MATCH_LABELS_EXCLUDE"), "MATCH_LABELS_EXCLUDE"
            ),
            namespace_filter=os.getenv("NAMESPACE_FILTER", ""),
        )


@dataclass
class SyncConfig:
    """Timing of reconciliation passes."""

    debounce_delay: float = 5.0  # quiet period before a pass, seconds
    retry_delay: float = 30.0  # delay before retrying a failed pass
    resync_interval: float = 0.0  # periodic pass while idle, 0 disables
    initial_delay: float = 5.0  # give the agent time to start

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            debounce_delay=float(os.getenv("SYNC_DEBOUNCE_DELAY", "5")),
            retry_delay=float(os.getenv("SYNC_RETRY_DELAY", "30")),
            resync_interval=float(os.getenv("SYNC_RESYNC_INTERVAL", "0")),
            initial_delay=float(os.getenv("INITIAL_DELAY", "5")),
        )


@dataclass
class KubernetesConfig:
    """Kubernetes API access."""

    kubeconfig: str = field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".kube", "config")
    )
    request_timeout: float = 10.0
    watch_timeout: int = 300
    log_http_requests: bool = False

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        kubeconfig = os.getenv("KUBECONFIG") or os.path.join(
            os.path.expanduser("~"), ".kube", "config"
        )
        return cls(
            kubeconfig=kubeconfig,
            request_timeout=float(os.getenv("KUBERNETES_REQUEST_TIMEOUT", "10")),
            watch_timeout=int(os.getenv("KUBERNETES_WATCH_TIMEOUT", "300")),
            log_http_requests=_parse_bool(
                os.getenv("LOG_KUBERNETES_HTTP_REQUESTS", "false")
            ),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(level=os.getenv("LOG_LEVEL", "INFO").upper())


@dataclass
class Config:
    """Main configuration object."""

    registrar: RegistrarConfig
    discovery: DiscoveryConfig
    sync: SyncConfig
    kubernetes: KubernetesConfig
    logging: LoggingConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            registrar=RegistrarConfig.from_env(),
            discovery=DiscoveryConfig.from_env(),
            sync=SyncConfig.from_env(),
            kubernetes=KubernetesConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            registrar=RegistrarConfig(),
            discovery=DiscoveryConfig(),
            sync=SyncConfig(),
            kubernetes=KubernetesConfig(),
            logging=LoggingConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
