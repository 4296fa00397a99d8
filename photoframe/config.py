import json
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from .errors import ConfigurationError

logger = logging.getLogger("photoframe.config")

BYTES_PER_MB = 1024 * 1024
DEFAULT_API_KEY = "default-api-key-change-me"
DEFAULT_CONFIG_FILENAME = "photoframe.local.json"
CONFIG_FILE_ENV = "PHOTOFRAME_CONFIG_FILE"

DEFAULTS: Dict[str, Any] = {
    "api_key": DEFAULT_API_KEY,
    "rate_limit_window_ms": 15 * 60 * 1000,
    "rate_limit_max_requests": 10,
    "max_file_size_bytes": 10 * BYTES_PER_MB,
    "allowed_content_types": [
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
    ],
    "storage_directory": "public/photos",
    "enforce_https": False,
    "is_development": True,
    "host": "0.0.0.0",
    "port": 3001,
    "enable_cors": True,
    "log_uploads": True,
    "trust_proxy": False,
    "public_rate_limit": "120 per minute",
    "log_level": "INFO",
    "log_directory": None,
}

CONFIG_INT_KEYS = {
    "rate_limit_window_ms",
    "rate_limit_max_requests",
    "max_file_size_bytes",
    "port",
}

CONFIG_BOOLEAN_KEYS = {
    "enforce_https",
    "is_development",
    "enable_cors",
    "log_uploads",
    "trust_proxy",
}

CONFIG_STRING_KEYS = {"api_key", "host", "public_rate_limit", "log_level"}

# Environment variable -> (config key, parser name)
ENV_OVERRIDES = {
    "PHOTOFRAME_API_KEY": ("api_key", "str"),
    "PHOTOFRAME_PORT": ("port", "int"),
    "PHOTOFRAME_HOST": ("host", "str"),
    "PHOTOFRAME_MAX_FILE_SIZE": ("max_file_size_bytes", "int"),
    "PHOTOFRAME_RATE_LIMIT": ("rate_limit_max_requests", "int"),
    "PHOTOFRAME_RATE_LIMIT_WINDOW_MS": ("rate_limit_window_ms", "int"),
    "PHOTOFRAME_STORAGE_DIR": ("storage_directory", "str"),
    "PHOTOFRAME_LOGS_DIR": ("log_directory", "str"),
    "LOG_LEVEL": ("log_level", "str"),
}

TRUTHY_VALUES = {"1", "true", "yes", "on"}
FALSY_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Configuration:
    api_key: str
    rate_limit_window_ms: int
    rate_limit_max_requests: int
    max_file_size_bytes: int
    allowed_content_types: FrozenSet[str]
    storage_directory: Path
    enforce_https: bool
    is_development: bool
    host: str = "0.0.0.0"
    port: int = 3001
    enable_cors: bool = True
    log_uploads: bool = True
    trust_proxy: bool = False
    public_rate_limit: str = "120 per minute"
    log_level: str = "INFO"
    log_directory: Optional[Path] = None

    @property
    def rate_limit_window_seconds(self) -> float:
        return self.rate_limit_window_ms / 1000.0

    @property
    def requires_https(self) -> bool:
        return self.enforce_https and not self.is_development


def _safe_int(key: str, value: Any) -> Optional[int]:
    """Parse an integer setting, logging and discarding values that do not parse."""

    if isinstance(value, bool):
        value = None
    try:
        parsed = float(value)
        if math.isnan(parsed) or math.isinf(parsed) or parsed != int(parsed):
            raise ValueError(value)
        return int(parsed)
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %r. Ignoring it.", key, value)
        return None


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in TRUTHY_VALUES:
            return True
        if normalized in FALSY_VALUES:
            return False
    return None


def normalize_content_type(value: Optional[str]) -> str:
    """Lowercase a MIME type and drop any parameters (``; charset=...``)."""

    if not value:
        return ""
    return value.split(";", 1)[0].strip().lower()


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Extract configuration overrides from an environment mapping."""

    overrides: Dict[str, Any] = {}
    for env_key, (config_key, parser) in ENV_OVERRIDES.items():
        raw_value = environ.get(env_key)
        if raw_value is None or raw_value.strip() == "":
            continue
        if parser == "int":
            parsed = _safe_int(env_key, raw_value.strip())
            if parsed is not None:
                overrides[config_key] = parsed
        else:
            overrides[config_key] = raw_value.strip()

    if environ.get("PHOTOFRAME_ENV", "").strip().lower() == "production":
        overrides["is_development"] = False
        overrides["enforce_https"] = True

    return overrides


def default_config_path(environ: Mapping[str, str]) -> Path:
    candidate = environ.get(CONFIG_FILE_ENV)
    if candidate:
        return Path(candidate).expanduser()
    return Path.cwd() / DEFAULT_CONFIG_FILENAME


def load_local_overrides(path: Optional[Path]) -> Dict[str, Any]:
    """Read the local JSON override file, returning an empty mapping when absent."""

    if path is None or not path.exists():
        return {}

    try:
        with path.open("r", encoding="utf-8") as config_file:
            raw = json.load(config_file)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
        logger.warning("Failed to load local config %s: %s", path, error)
        return {}

    if not isinstance(raw, dict):
        logger.warning("Ignoring local config %s: top-level value must be an object", path)
        return {}

    unknown = sorted(key for key in raw if key not in DEFAULTS)
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(unknown))

    logger.info("Loaded local configuration from %s", path)
    return {key: value for key, value in raw.items() if key in DEFAULTS}


def merge_layers(*layers: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge configuration layers; later layers win and ``None`` never overrides."""

    merged: Dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if value is None:
                continue
            merged[key] = value
    return merged


def _content_type_set(value: Any) -> FrozenSet[str]:
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        raise ConfigurationError("allowed_content_types must be a list of MIME types")
    return frozenset(
        normalize_content_type(item) for item in items if isinstance(item, str) and item.strip()
    )


def build_configuration(values: Mapping[str, Any]) -> Configuration:
    """Coerce merged values into a :class:`Configuration`, enforcing its invariants."""

    config = merge_layers(DEFAULTS, values)

    for key in CONFIG_INT_KEYS:
        parsed = _safe_int(key, config[key])
        if parsed is None:
            raise ConfigurationError(f"{key} must be an integer")
        config[key] = parsed

    for key in CONFIG_BOOLEAN_KEYS:
        parsed_bool = _coerce_bool(config[key])
        if parsed_bool is None:
            raise ConfigurationError(f"{key} must be a boolean")
        config[key] = parsed_bool

    for key in CONFIG_STRING_KEYS:
        if not isinstance(config[key], str) or not config[key].strip():
            raise ConfigurationError(f"{key} must be a non-empty string")
        config[key] = config[key].strip()

    if config["rate_limit_max_requests"] <= 0:
        raise ConfigurationError("rate_limit_max_requests must be greater than zero")
    if config["rate_limit_window_ms"] <= 0:
        raise ConfigurationError("rate_limit_window_ms must be greater than zero")
    if config["max_file_size_bytes"] <= 0:
        raise ConfigurationError("max_file_size_bytes must be greater than zero")
    if not 0 < config["port"] < 65536:
        raise ConfigurationError("port must be between 1 and 65535")

    allowed = _content_type_set(config["allowed_content_types"])
    if not allowed:
        raise ConfigurationError("allowed_content_types must not be empty")

    storage_directory = Path(str(config["storage_directory"])).expanduser().resolve()
    log_directory = config.get("log_directory")

    return Configuration(
        api_key=config["api_key"],
        rate_limit_window_ms=config["rate_limit_window_ms"],
        rate_limit_max_requests=config["rate_limit_max_requests"],
        max_file_size_bytes=config["max_file_size_bytes"],
        allowed_content_types=allowed,
        storage_directory=storage_directory,
        enforce_https=config["enforce_https"],
        is_development=config["is_development"],
        host=config["host"],
        port=config["port"],
        enable_cors=config["enable_cors"],
        log_uploads=config["log_uploads"],
        trust_proxy=config["trust_proxy"],
        public_rate_limit=config["public_rate_limit"],
        log_level=config["log_level"].upper(),
        log_directory=Path(str(log_directory)).expanduser().resolve() if log_directory else None,
    )


def ensure_storage_directory(path: Path) -> None:
    """Create *path* if needed and verify the process can write to it."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise ConfigurationError(f"storage_directory {path} cannot be created: {error}") from error

    if not path.is_dir():
        raise ConfigurationError(f"storage_directory {path} is not a directory")
    if not os.access(path, os.W_OK | os.X_OK):
        raise ConfigurationError(f"storage_directory {path} is not writable")


def resolve_configuration(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
) -> Configuration:
    """Resolve the effective configuration: environment > local file > defaults."""

    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = default_config_path(environ)

    config = build_configuration(
        merge_layers(load_local_overrides(config_path), env_overrides(environ))
    )
    ensure_storage_directory(config.storage_directory)

    if config.api_key == DEFAULT_API_KEY and not config.is_development:
        logging.getLogger("photoframe.security").critical(
            "SECURITY WARNING: Using the default API key outside development. "
            "Set PHOTOFRAME_API_KEY or api_key in %s.",
            config_path.name,
        )

    return config
