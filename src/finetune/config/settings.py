"""
Configuration for the fine-tune lifecycle module.

Values come from, in increasing precedence: dataclass defaults, an optional
YAML file, and environment variables. A ``.env`` file at the repository
root is loaded into the environment first without overriding variables
already set in the shell.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

try:
    import yaml
except ImportError:
    yaml = None

from ..core.exceptions import ConfigError


logger = logging.getLogger(__name__)


# settings.py -> config -> finetune -> src -> repo root
DEFAULT_DOTENV_PATH = Path(__file__).resolve().parents[3] / ".env"

SUPPORTED_BACKENDS = ("sqlite", "sqlserver")


@dataclass
class ProviderSettings:
    """Training provider connection."""
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    timeout_seconds: int = 60
    webhook_url: Optional[str] = None


@dataclass
class NotifierSettings:
    """Email function endpoint; no URL selects the logging notifier."""
    email_function_url: Optional[str] = None
    auth_token: Optional[str] = None
    timeout_seconds: int = 15


@dataclass
class StorageSettings:
    """Lifecycle store selection and connection details."""
    backend: str = "sqlite"
    db_path: str = "local/state/finetune.db"
    connection_string: Optional[str] = None
    host: str = "localhost"
    port: int = 1433
    database: str = "FineTune"
    username: str = "sa"
    password: Optional[str] = None
    driver: str = "ODBC Driver 18 for SQL Server"
    schema: str = "finetune"


@dataclass
class FineTuneConfig:
    """
    Lifecycle constants plus provider, notifier and storage settings.
    
    Attributes:
        max_retries: Retry budget per snapshot
        lock_ttl_seconds: Lifetime of export/retry locks
        cooldown_seconds: Minimum gap between automatic retries of one snapshot
        min_examples: Minimum training examples per export
        poll_max_attempts: Attempts per provider status read
        poll_base_delay_seconds: Backoff unit between those attempts
        poll_max_workers: Concurrent status reads per poll pass
        default_model: Base model for new training jobs
        data_path: JSONL file of training rows used by the CLI
    """
    max_retries: int = 3
    lock_ttl_seconds: int = 600
    cooldown_seconds: int = 300
    min_examples: int = 10
    poll_max_attempts: int = 3
    poll_base_delay_seconds: float = 1.0
    poll_max_workers: int = 4
    default_model: str = "gpt-3.5-turbo"
    data_path: Optional[str] = None
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    notifier: NotifierSettings = field(default_factory=NotifierSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    
    def validate(self) -> None:
        """
        Check value ranges.
        
        Raises:
            ConfigError: If any value is out of range
        """
        errors = []
        if self.max_retries < 0:
            errors.append("max_retries must be >= 0")
        if self.lock_ttl_seconds <= 0:
            errors.append("lock_ttl_seconds must be > 0")
        if self.cooldown_seconds < 0:
            errors.append("cooldown_seconds must be >= 0")
        if self.min_examples < 1:
            errors.append("min_examples must be >= 1")
        if self.poll_max_attempts < 1:
            errors.append("poll_max_attempts must be >= 1")
        if self.poll_base_delay_seconds < 0:
            errors.append("poll_base_delay_seconds must be >= 0")
        if self.poll_max_workers < 1:
            errors.append("poll_max_workers must be >= 1")
        if self.provider.timeout_seconds <= 0:
            errors.append("provider.timeout_seconds must be > 0")
        if self.storage.backend not in SUPPORTED_BACKENDS:
            errors.append(
                f"storage.backend must be one of {', '.join(SUPPORTED_BACKENDS)}, "
                f"got '{self.storage.backend}'"
            )
        if errors:
            raise ConfigError("; ".join(errors))


# Environment variable -> (section, key); section None is the top level.
# The first non-empty variable listed for a key wins.
ENV_OVERRIDES = (
    ("FINETUNE_MAX_RETRIES", None, "max_retries"),
    ("FINETUNE_LOCK_TTL_SECONDS", None, "lock_ttl_seconds"),
    ("FINETUNE_COOLDOWN_SECONDS", None, "cooldown_seconds"),
    ("FINETUNE_MIN_EXAMPLES", None, "min_examples"),
    ("FINETUNE_POLL_MAX_ATTEMPTS", None, "poll_max_attempts"),
    ("FINETUNE_POLL_BASE_DELAY_SECONDS", None, "poll_base_delay_seconds"),
    ("FINETUNE_POLL_MAX_WORKERS", None, "poll_max_workers"),
    ("FINETUNE_DEFAULT_MODEL", None, "default_model"),
    ("FINETUNE_DATA_PATH", None, "data_path"),
    ("FINETUNE_PROVIDER_BASE_URL", "provider", "base_url"),
    ("OPENAI_BASE_URL", "provider", "base_url"),
    ("OPENAI_API_KEY", "provider", "api_key"),
    ("FINETUNE_PROVIDER_TIMEOUT_SECONDS", "provider", "timeout_seconds"),
    ("FINETUNE_WEBHOOK_URL", "provider", "webhook_url"),
    ("FINETUNE_EMAIL_FUNCTION_URL", "notifier", "email_function_url"),
    ("FINETUNE_EMAIL_FUNCTION_TOKEN", "notifier", "auth_token"),
    ("FINETUNE_DB_BACKEND", "storage", "backend"),
    ("FINETUNE_DB_PATH", "storage", "db_path"),
    ("FINETUNE_SQLSERVER_CONN_STR", "storage", "connection_string"),
    ("FINETUNE_SQLSERVER_HOST", "storage", "host"),
    ("FINETUNE_SQLSERVER_PORT", "storage", "port"),
    ("FINETUNE_SQLSERVER_DATABASE", "storage", "database"),
    ("FINETUNE_SQLSERVER_USER", "storage", "username"),
    ("FINETUNE_SQLSERVER_PASSWORD", "storage", "password"),
    ("MSSQL_SA_PASSWORD", "storage", "password"),
    ("FINETUNE_SQLSERVER_DRIVER", "storage", "driver"),
    ("FINETUNE_SQLSERVER_SCHEMA", "storage", "schema"),
)


def _coerce(target: Any, name: str, value: Any, source: str) -> Any:
    """Convert a raw value to the type of the dataclass field it replaces."""
    current = getattr(target, name)
    annotation = {f.name: f.type for f in fields(target)}[name]
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(current, int) or annotation in (int, "int"):
            return int(value)
        if isinstance(current, float) or annotation in (float, "float"):
            return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name} from {source}: {value!r}") from None
    return None if value is None else str(value)


def _apply_section(target: Any, values: Mapping[str, Any], source: str) -> None:
    known = {f.name for f in fields(target)}
    for name, value in values.items():
        if name not in known:
            raise ConfigError(f"Unknown setting '{name}' in {source}")
        if isinstance(getattr(target, name), (ProviderSettings, NotifierSettings, StorageSettings)):
            if not isinstance(value, Mapping):
                raise ConfigError(f"Section '{name}' in {source} must be a mapping")
            _apply_section(getattr(target, name), value, f"{source}:{name}")
        else:
            setattr(target, name, _coerce(target, name, value, source))


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    if yaml is None:
        raise ImportError(
            "pyyaml is required for config loading. "
            "Install with: pip install pyyaml"
        )
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    
    logger.info(f"Loading config from: {config_path}")
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[Path] = DEFAULT_DOTENV_PATH,
) -> FineTuneConfig:
    """
    Build a validated FineTuneConfig.
    
    Args:
        config_path: Optional YAML file
        environ: Environment mapping (defaults to os.environ)
        dotenv_path: .env file loaded into os.environ first; None disables it
        
    Raises:
        ConfigError: If the file or any value is invalid
    """
    if dotenv_path is not None and Path(dotenv_path).exists():
        load_dotenv(dotenv_path, override=False)
    if environ is None:
        environ = os.environ
    
    config = FineTuneConfig()
    
    if config_path is not None:
        data = _read_yaml(Path(config_path))
        # Lifecycle constants may sit under a 'lifecycle' section or at the top
        lifecycle = data.pop("lifecycle", None) or {}
        if not isinstance(lifecycle, Mapping):
            raise ConfigError(f"Section 'lifecycle' in {config_path} must be a mapping")
        _apply_section(config, {**lifecycle, **data}, str(config_path))
    
    applied = set()
    for env_key, section, name in ENV_OVERRIDES:
        value = environ.get(env_key)
        if value is None or value.strip() == "" or (section, name) in applied:
            continue
        target = getattr(config, section) if section else config
        setattr(target, name, _coerce(target, name, value, env_key))
        applied.add((section, name))
    
    config.validate()
    return config
