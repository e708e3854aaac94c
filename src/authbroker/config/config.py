"""authbroker configuration from YAML file.

Loads from config/authbroker.yaml with all settings in one place:
- Account providers (merged over the built-in GitHub and Microsoft templates)
- Flow selection and timeouts
- Refresh lead time and retry policy
- Session storage backend
- Logging

Environment variables ARE supported using ${VAR_NAME} and
${VAR_NAME:-default} syntax in YAML files.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from authbroker.oauth2.exceptions import InvalidConfigurationError
from authbroker.oauth2.models import ProviderConfig
from authbroker.oauth2.providers import BUILTIN_PROVIDER_TEMPLATES
from authbroker.resilience.retry import RetryConfig
from authbroker.storage import InMemorySecretStorage, JsonFileSecretStorage
from authbroker.types import SecretStorage

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Default config file, relative to the working directory
DEFAULT_CONFIG_FILE = Path("config") / "authbroker.yaml"
DEFAULT_STORAGE_PATH = "~/.config/authbroker/sessions.json"

FLOW_MODES = ["auto", "loopback", "device_code"]
STORAGE_BACKENDS = ["memory", "file"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class AuthBrokerConfig:
    """authbroker configuration.

    Configuration structure:
        authbroker:
          providers:                  # List of provider settings
            - id: github              # Built-in ids inherit endpoints
              client_id: ${GITHUB_CLIENT_ID:-}
          flows:
            default: auto             # auto | loopback | device_code
            loopback_timeout_seconds: 300
            device_code_timeout_seconds: 900
          refresh:
            lead_seconds: 300
            retry: {max_attempts: 4, base_delay: 2.0, max_delay: 60.0}
          storage:
            backend: file             # memory | file
            path: ~/.config/authbroker/sessions.json
          logging:
            level: INFO
            json: false
    """

    providers: List[ProviderConfig] = field(default_factory=list)

    # =========================================================================
    # FLOWS
    # =========================================================================
    default_flow: str = "auto"
    loopback_timeout_seconds: float = 300.0
    device_code_timeout_seconds: float = 900.0

    # =========================================================================
    # REFRESH
    # =========================================================================
    refresh_lead_seconds: float = 300.0
    refresh_retry: RetryConfig = field(default_factory=RetryConfig)

    # =========================================================================
    # STORAGE
    # =========================================================================
    storage_backend: str = "file"
    storage_path: str = DEFAULT_STORAGE_PATH

    # =========================================================================
    # LOGGING
    # =========================================================================
    log_level: str = "INFO"
    log_json: bool = False

    def get_provider(self, provider_id: str) -> ProviderConfig:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        raise KeyError(
            f"Provider '{provider_id}' not configured. "
            f"Available: {[p.id for p in self.providers]}"
        )

    def build_storage(self) -> SecretStorage:
        """Create the configured session storage backend."""
        if self.storage_backend == "memory":
            return InMemorySecretStorage()
        return JsonFileSecretStorage(self.storage_path)

    def validate(self) -> None:
        """Validate configuration for correctness and constraints."""
        settings = {
            "default_flow": self.default_flow,
            "loopback_timeout_seconds": self.loopback_timeout_seconds,
            "device_code_timeout_seconds": self.device_code_timeout_seconds,
            "refresh_lead_seconds": self.refresh_lead_seconds,
            "storage_backend": self.storage_backend,
            "log_level": self.log_level,
        }
        self._validate_enum(settings, "default_flow", FLOW_MODES, "flows")
        self._validate_min(settings, "loopback_timeout_seconds", 0, inclusive=False, context="flows")
        self._validate_min(settings, "device_code_timeout_seconds", 0, inclusive=False, context="flows")
        self._validate_min(settings, "refresh_lead_seconds", 0, inclusive=True, context="refresh")
        self._validate_enum(settings, "storage_backend", STORAGE_BACKENDS, "storage")
        self._validate_enum(settings, "log_level", LOG_LEVELS, "logging")

        if self.storage_backend == "file" and not self.storage_path:
            raise ValueError("storage: path is required for the file backend")

        seen = set()
        for provider in self.providers:
            if provider.id in seen:
                raise ValueError(f"providers: duplicate provider id '{provider.id}'")
            seen.add(provider.id)

    @staticmethod
    def _validate_enum(
        settings: Dict[str, Any],
        key: str,
        valid_values: List[Any],
        context: str
    ) -> None:
        """Validate that a setting's value is in a list of valid values."""
        if key in settings and settings[key] not in valid_values:
            raise ValueError(
                f"{context}: {key} must be one of {valid_values}, "
                f"got '{settings[key]}'"
            )

    @staticmethod
    def _validate_min(
        settings: Dict[str, Any],
        key: str,
        min_value: float,
        inclusive: bool,
        context: str
    ) -> None:
        """Validate that a setting's value meets a minimum threshold."""
        if key in settings:
            value = settings[key]
            if inclusive and value < min_value:
                raise ValueError(
                    f"{context}: {key} must be >= {min_value}, got {value}"
                )
            elif not inclusive and value <= min_value:
                raise ValueError(
                    f"{context}: {key} must be > {min_value}, got {value}"
                )


def _build_providers(entries: List[Dict[str, Any]]) -> List[ProviderConfig]:
    """Provider configs from YAML entries; built-in ids inherit their template."""
    providers = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("id"):
            raise ValueError(f"providers: each entry needs an 'id', got {entry!r}")

        provider_id = entry["id"]
        data = _deep_merge(BUILTIN_PROVIDER_TEMPLATES.get(provider_id, {}), entry)
        if not data.get("client_id"):
            logger.warning(f"Provider '{provider_id}' has no client_id configured, skipping")
            continue

        try:
            providers.append(ProviderConfig.from_dict(data))
        except (InvalidConfigurationError, TypeError, ValueError) as e:
            raise ValueError(f"providers: invalid settings for '{provider_id}': {e}") from e
    return providers


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> AuthBrokerConfig:
    """Load authbroker configuration from a YAML file.

    With no path, config/authbroker.yaml is used when present and defaults
    otherwise. An explicit path must exist.

    Raises:
        FileNotFoundError: Explicit config_path does not exist
        ValueError: Invalid structure or setting
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE
        if not config_path.exists():
            logger.debug(f"No configuration file at {config_path}, using defaults")
    elif not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    yaml_data = _expand_env_vars(load_yaml(config_path))
    if yaml_data and "authbroker" not in yaml_data:
        raise ValueError(
            "Invalid config file: missing 'authbroker:' section\n"
            "See authbroker.yaml.example for correct structure"
        )

    settings = yaml_data.get("authbroker") or {}
    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        settings = _deep_merge(settings, overrides)

    flows = settings.get("flows", {})
    refresh = settings.get("refresh", {})
    storage = settings.get("storage", {})
    logging_settings = settings.get("logging", {})

    try:
        refresh_retry = RetryConfig(**refresh.get("retry", {}))
    except TypeError as e:
        raise ValueError(f"refresh.retry: {e}") from e

    config = AuthBrokerConfig(
        providers=_build_providers(settings.get("providers", [])),
        default_flow=flows.get("default", "auto"),
        loopback_timeout_seconds=float(flows.get("loopback_timeout_seconds", 300)),
        device_code_timeout_seconds=float(flows.get("device_code_timeout_seconds", 900)),
        refresh_lead_seconds=float(refresh.get("lead_seconds", 300)),
        refresh_retry=refresh_retry,
        storage_backend=storage.get("backend", "file"),
        storage_path=storage.get("path", DEFAULT_STORAGE_PATH),
        log_level=str(logging_settings.get("level", "INFO")).upper(),
        log_json=bool(logging_settings.get("json", False)),
    )

    logger.debug(f"Configured providers: {[p.id for p in config.providers]}")
    config.validate()
    return config


__all__ = [
    "AuthBrokerConfig",
    "load_config",
    "load_yaml",
    "DEFAULT_CONFIG_FILE",
]
