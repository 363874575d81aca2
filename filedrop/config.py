import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional

logger = logging.getLogger("filedrop.config")

BASE_DIR = Path.cwd()

INDEX_FILENAME = "files.json"
CONFIG_FILENAME = "config.json"

DAY_MS = 24 * 60 * 60 * 1000
BYTES_PER_MB = 1024 * 1024
RETENTION_CEILING_DAYS = 30


class StoragePaths(NamedTuple):
    root: Path
    data_dir: Path
    uploads_dir: Path
    logs_dir: Path

    @property
    def index_path(self) -> Path:
        return self.data_dir / INDEX_FILENAME

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILENAME


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def resolve_paths(root: Optional[Path] = None) -> StoragePaths:
    """Resolve storage directories from the environment.

    An explicit *root* wins over ``FILEDROP_STORAGE_ROOT``; the data, uploads
    and logs directories can each still be overridden individually.
    """

    if root is not None:
        storage_root = Path(root).expanduser().resolve()
    else:
        storage_root = _resolve_env_path("FILEDROP_STORAGE_ROOT", BASE_DIR)
    return StoragePaths(
        root=storage_root,
        data_dir=_resolve_env_path("FILEDROP_DATA_DIR", storage_root / "data"),
        uploads_dir=_resolve_env_path("FILEDROP_UPLOADS_DIR", storage_root / "uploads"),
        logs_dir=_resolve_env_path("FILEDROP_LOGS_DIR", storage_root / "logs"),
    )


def ensure_directories(paths: StoragePaths) -> None:
    paths.data_dir.mkdir(parents=True, exist_ok=True)
    paths.uploads_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)


DEFAULT_CONFIG: Dict[str, Any] = {
    "retention_days": 7.0,
    "retention_min_days": 1.0,
    "retention_max_days": 30.0,
    "code_length": 6.0,
    "max_code_attempts": 100.0,
    "backup_count": 3.0,
    "deep_backup_count": 10.0,
    "orphan_grace_minutes": 60.0,
    "cleanup_interval_minutes": 60.0,
    "deep_cleanup_hour": 2.0,
    "max_upload_size_mb": float(_safe_int_env("FILEDROP_MAX_UPLOAD_SIZE_MB", 50)),
    "max_concurrent_uploads": float(_safe_int_env("FILEDROP_MAX_CONCURRENT_UPLOADS", 10)),
    "upload_rate_limit": "10 per 15 minutes",
    "verify_rate_limit": "30 per 5 minutes",
    "download_rate_limit": "50 per 10 minutes",
    "admin_key": "",
    "rate_limit_enabled": True,
    "scheduler_enabled": True,
}

CONFIG_NUMERIC_KEYS = {
    "retention_days",
    "retention_min_days",
    "retention_max_days",
    "code_length",
    "max_code_attempts",
    "backup_count",
    "deep_backup_count",
    "orphan_grace_minutes",
    "cleanup_interval_minutes",
    "deep_cleanup_hour",
    "max_upload_size_mb",
    "max_concurrent_uploads",
}

CONFIG_STRING_KEYS = {
    "upload_rate_limit",
    "verify_rate_limit",
    "download_rate_limit",
    "admin_key",
}

CONFIG_BOOLEAN_KEYS = {"rate_limit_enabled", "scheduler_enabled"}

# Keys whose value must stay >= 1; anything lower falls back to the default.
_POSITIVE_KEYS = {
    "code_length",
    "max_code_attempts",
    "backup_count",
    "deep_backup_count",
    "cleanup_interval_minutes",
    "max_upload_size_mb",
    "max_concurrent_uploads",
}


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity.

    Args:
        value: Value to coerce to float
        default: Default value to use if coercion fails

    Returns:
        Float value or default
    """
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _normalize_config(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    for key in _POSITIVE_KEYS:
        if config[key] < 1:
            config[key] = float(DEFAULT_CONFIG[key])

    # Boundaries first, then clamp the default retention into them.
    config["retention_min_days"] = min(
        max(config["retention_min_days"], 1.0), float(RETENTION_CEILING_DAYS)
    )
    config["retention_max_days"] = min(
        max(config["retention_max_days"], config["retention_min_days"]),
        float(RETENTION_CEILING_DAYS),
    )
    config["retention_days"] = min(
        max(config["retention_days"], config["retention_min_days"]),
        config["retention_max_days"],
    )

    if config["orphan_grace_minutes"] < 0:
        config["orphan_grace_minutes"] = float(DEFAULT_CONFIG["orphan_grace_minutes"])

    if not 0 <= config["deep_cleanup_hour"] <= 23:
        config["deep_cleanup_hour"] = float(DEFAULT_CONFIG["deep_cleanup_hour"])

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            value = raw_config.get(key)
            if isinstance(value, str):
                config[key] = value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                config[key] = bool(value)

    for key in CONFIG_STRING_KEYS:
        if key in raw_config and isinstance(raw_config.get(key), str):
            value = raw_config.get(key).strip()
            if key != "admin_key" and not value:
                continue
            config[key] = value

    return config


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    admin_key = os.environ.get("FILEDROP_ADMIN_KEY")
    if admin_key is not None:
        config["admin_key"] = admin_key.strip()
    if os.environ.get("FILEDROP_MAX_UPLOAD_SIZE_MB"):
        config["max_upload_size_mb"] = float(
            _safe_int_env("FILEDROP_MAX_UPLOAD_SIZE_MB", int(config["max_upload_size_mb"]))
        )
    scheduler_flag = os.environ.get("FILEDROP_SCHEDULER_ENABLED")
    if scheduler_flag is not None:
        config["scheduler_enabled"] = scheduler_flag.strip().lower() in {"1", "true", "yes", "on"}
    if os.environ.get("FILEDROP_CLEANUP_INTERVAL_MINUTES"):
        config["cleanup_interval_minutes"] = float(
            _safe_int_env(
                "FILEDROP_CLEANUP_INTERVAL_MINUTES", int(config["cleanup_interval_minutes"])
            )
        )
    return config


def load_config(paths: StoragePaths) -> Dict[str, Any]:
    """Load the runtime config, creating it with defaults on first use."""

    ensure_directories(paths)
    config_path = paths.config_path
    if config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as config_file:
                raw = json.load(config_file)
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("config_unreadable path=%s error=%s", config_path, error)
            raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(paths, raw)

    data = _normalize_config(raw)
    if raw != data:
        save_config(paths, data)
    return _apply_env_overrides(data)


def save_config(paths: StoragePaths, config: Dict[str, Any]) -> None:
    ensure_directories(paths)
    normalized = _normalize_config(config)
    config_path = paths.config_path

    temp_path = config_path.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())
        temp_path.replace(config_path)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def config_int(config: Dict[str, Any], key: str) -> int:
    return int(_coerce_numeric(config.get(key), DEFAULT_CONFIG[key]))


def merge_config(config: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Apply in-process overrides on top of a loaded config without persisting them."""

    if not overrides:
        return dict(config)
    return _normalize_config({**config, **overrides})
