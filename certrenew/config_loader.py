"""
Configuration loading, validation, and parsing.

Loads configuration from YAML files and provides typed access
to configuration values.
"""

import math
import os
import re
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple, Union

import yaml

from .logger import StructuredLogger, null_logger


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


DEFAULT_CONCURRENCY = 5
DEFAULT_PERSIST_ATTEMPTS = 2
DEFAULT_VAULT_PORT = 8200
DEFAULT_VAULT_TIMEOUT = 30

CONCURRENCY_ENV_VAR = "CERT_RENEWAL_CONCURRENCY"

TRUE_STRINGS = ("true", "yes", "on", "1")
FALSE_STRINGS = ("false", "no", "off", "0")


@dataclass
class FileScannerConfig:
    """File scanner configuration.

    path is a glob matching certificate request files. crt_map and key_map
    are (search, replace) pairs applied to a request path to derive the
    certificate and private key paths.
    """
    name: str
    path: str
    crt_map: Tuple[str, str]
    key_map: Tuple[str, str]


@dataclass
class VaultProviderConfig:
    """HashiCorp Vault PKI provider configuration."""
    name: str
    host: str
    path: str
    role: str
    token: str = ""
    port: int = DEFAULT_VAULT_PORT
    scheme: str = "https"
    verify: Union[bool, str] = True
    timeout: float = DEFAULT_VAULT_TIMEOUT

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class MappingConfig:
    """Pairing of one scanner with one provider.

    Any field may be missing from the file. Values that cannot be used
    are dropped and described in problems; the orchestrator skips such
    mappings rather than rejecting the whole file.
    """
    scanner: Optional[str] = None
    provider: Optional[str] = None
    expire: Optional[float] = None
    threshold: Optional[float] = None
    problems: Tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.scanner or '?'} -> {self.provider or '?'}"


@dataclass
class Settings:
    """Global settings."""
    concurrency: int = DEFAULT_CONCURRENCY
    persist_attempts: int = DEFAULT_PERSIST_ATTEMPTS
    dry_run: bool = False


@dataclass
class Config:
    """Root configuration object."""
    settings: Settings
    scanners: Dict[str, FileScannerConfig] = field(default_factory=dict)
    providers: Dict[str, VaultProviderConfig] = field(default_factory=dict)
    maps: List[MappingConfig] = field(default_factory=list)


def _expand_env_vars(value: Any) -> Any:
    """
    Expand environment variables in string values.

    Supports ${VAR_NAME} syntax. Unknown variables are left untouched.

    Args:
        value: Value to expand (string, dict, or list)

    Returns:
        Value with environment variables expanded
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"

        def replace(match):
            var_name = match.group(1)
            return os.environ.get(var_name, match.group(0))

        return re.sub(pattern, replace, value)

    elif isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_expand_env_vars(item) for item in value]

    return value


def _positive_int(value: Any, name: str) -> int:
    """Coerce a setting to a positive integer."""
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if number < 1:
        raise ConfigurationError(f"{name} must be at least 1, got {number}")
    return number


def _parse_map_pair(data: Any, scanner_name: str, key: str) -> Tuple[str, str]:
    """Parse a [search, replace] pair."""
    if not isinstance(data, (list, tuple)) or len(data) != 2 or not all(
        isinstance(part, str) and part for part in data
    ):
        raise ConfigurationError(
            f"Scanner {scanner_name}: maps.{key} must be a [search, replace] pair of strings"
        )
    return data[0], data[1]


def _parse_scanners(data: Dict[str, Any]) -> Dict[str, FileScannerConfig]:
    """
    Parse scanner configurations.

    Args:
        data: Raw scanners section from YAML

    Returns:
        Mapping of scanner name to FileScannerConfig
    """
    scanners = {}

    for name, scanner_data in (data.get("file") or {}).items():
        if not isinstance(scanner_data, dict):
            raise ConfigurationError(f"Scanner {name} must be a mapping")
        if not scanner_data.get("path"):
            raise ConfigurationError(f"Scanner {name}: 'path' is required")

        maps = scanner_data.get("maps") or {}
        if "crt" not in maps or "key" not in maps:
            raise ConfigurationError(f"Scanner {name}: 'maps' needs both 'crt' and 'key'")

        scanners[name] = FileScannerConfig(
            name=name,
            path=str(scanner_data["path"]),
            crt_map=_parse_map_pair(maps["crt"], name, "crt"),
            key_map=_parse_map_pair(maps["key"], name, "key"),
        )

    return scanners


def _parse_providers(data: Dict[str, Any]) -> Dict[str, VaultProviderConfig]:
    """
    Parse provider configurations.

    Args:
        data: Raw providers section from YAML

    Returns:
        Mapping of provider name to VaultProviderConfig
    """
    providers = {}

    for name, provider_data in (data.get("vault") or {}).items():
        if not isinstance(provider_data, dict):
            raise ConfigurationError(f"Provider {name} must be a mapping")
        for required in ("host", "path", "role"):
            if not provider_data.get(required):
                raise ConfigurationError(f"Provider {name}: '{required}' is required")

        scheme = str(provider_data.get("scheme", "https")).lower()
        if scheme not in ("http", "https"):
            raise ConfigurationError(f"Provider {name}: scheme must be http or https")

        verify = provider_data.get("verify", True)
        if isinstance(verify, str) and verify.strip().lower() in TRUE_STRINGS + FALSE_STRINGS:
            verify = _parse_bool(verify, f"Provider {name}: verify")
        if not isinstance(verify, (bool, str)):
            raise ConfigurationError(f"Provider {name}: verify must be a boolean or a CA bundle path")

        try:
            timeout = float(provider_data.get("timeout", DEFAULT_VAULT_TIMEOUT))
        except (TypeError, ValueError):
            raise ConfigurationError(f"Provider {name}: timeout must be a number")

        providers[name] = VaultProviderConfig(
            name=name,
            host=str(provider_data["host"]),
            path=str(provider_data["path"]).strip("/"),
            role=str(provider_data["role"]),
            token=str(provider_data.get("token") or ""),
            port=_positive_int(provider_data.get("port", DEFAULT_VAULT_PORT), f"Provider {name}: port"),
            scheme=scheme,
            verify=verify,
            timeout=timeout,
        )

    return providers


def _parse_hours(value: Any, name: str) -> Optional[float]:
    """
    Parse an optional duration in hours.

    Numeric strings are accepted, since ${VAR} expansion always yields
    strings.

    Raises:
        ValueError: If the value is not a positive number
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number of hours, got {value!r}")
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number of hours, got {value!r}")
    if not math.isfinite(hours) or hours <= 0:
        raise ValueError(f"{name} must be positive, got {value!r}")
    return int(hours) if hours.is_integer() else hours


def _parse_maps(data: List[Any]) -> List[MappingConfig]:
    """
    Parse scanner to provider mappings.

    A mapping with unusable values is kept with its problems listed, so
    that it is skipped on its own while the other mappings still run.

    Args:
        data: Raw maps list from YAML

    Returns:
        List of MappingConfig instances
    """
    if not isinstance(data, list):
        raise ConfigurationError("'maps' must be a list")

    maps = []
    for map_data in data:
        if not isinstance(map_data, dict):
            maps.append(MappingConfig(problems=(f"entry must be a mapping, got {map_data!r}",)))
            continue

        problems = []
        durations = {}
        for key in ("expire", "threshold"):
            try:
                durations[key] = _parse_hours(map_data.get(key), key)
            except ValueError as e:
                durations[key] = None
                problems.append(str(e))

        maps.append(MappingConfig(
            scanner=map_data.get("scanner"),
            provider=map_data.get("provider"),
            expire=durations["expire"],
            threshold=durations["threshold"],
            problems=tuple(problems),
        ))

    return maps


def _parse_bool(value: Any, name: str) -> bool:
    """Parse a boolean that may arrive as a string from ${VAR} expansion."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in TRUE_STRINGS:
        return True
    if isinstance(value, str) and value.strip().lower() in FALSE_STRINGS:
        return False
    raise ConfigurationError(f"{name} must be true or false, got {value!r}")


def _parse_settings(data: Dict[str, Any]) -> Settings:
    """
    Parse settings configuration.

    The concurrency environment variable overrides the file value.

    Args:
        data: Raw settings data from YAML

    Returns:
        Settings instance
    """
    concurrency = os.environ.get(CONCURRENCY_ENV_VAR) or data.get("concurrency", DEFAULT_CONCURRENCY)

    return Settings(
        concurrency=_positive_int(concurrency, "concurrency"),
        persist_attempts=_positive_int(
            data.get("persist_attempts", DEFAULT_PERSIST_ATTEMPTS), "persist_attempts"
        ),
        dry_run=_parse_bool(data.get("dry_run", False), "dry_run"),
    )


def load_config(config_path: str, logger: Optional[StructuredLogger] = None) -> Config:
    """
    Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the configuration file
        logger: Logger for the loaded configuration overview

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger = logger or null_logger()
    path = Path(config_path)

    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    if path.suffix not in (".yaml", ".yml"):
        raise ConfigurationError(
            f"Configuration file must be YAML (.yaml or .yml): {config_path}"
        )

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
    except IOError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}")

    if not raw_data:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_data, dict):
        raise ConfigurationError("Configuration file must contain a mapping")

    data = _expand_env_vars(raw_data)

    if "maps" not in data:
        raise ConfigurationError("Missing 'maps' section in configuration")

    settings = _parse_settings(data.get("settings") or {})
    scanners = _parse_scanners(data.get("scanners") or {})
    providers = _parse_providers(data.get("providers") or {})
    maps = _parse_maps(data.get("maps") or [])

    logger.info(f"Loaded configuration from {config_path}")
    logger.info(f"  Scanners: {len(scanners)}")
    logger.info(f"  Providers: {len(providers)}")
    logger.info(f"  Mappings: {len(maps)}")
    logger.info(f"  Concurrency: {settings.concurrency}")

    return Config(
        settings=settings,
        scanners=scanners,
        providers=providers,
        maps=maps,
    )
