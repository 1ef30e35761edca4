import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_path(name, default):
    value = os.environ.get(name)
    if value:
        return os.path.abspath(value)
    return os.path.abspath(default)


# Base directories for all file access. Override via env for container mounts.
CONFIG_DIR = _env_path("JF_FETCH_CONFIG_DIR", PROJECT_ROOT / "config")
DATA_DIR = _env_path("JF_FETCH_DATA_DIR", PROJECT_ROOT / "storage")
LOG_DIR = _env_path("JF_FETCH_LOG_DIR", PROJECT_ROOT / "storage" / "logs")
DOWNLOADS_DIR = _env_path("JF_FETCH_DOWNLOADS_DIR", PROJECT_ROOT / "storage" / "downloads")
LIBRARY_DIR = _env_path("JF_FETCH_LIBRARY_DIR", PROJECT_ROOT / "storage" / "library")


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    db_path: str
    config_path: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path=None):
    path = path or os.environ.get("JF_FETCH_CONFIG")
    if not path:
        return os.path.join(CONFIG_DIR, "config.json")
    if os.path.isabs(path):
        return os.path.abspath(path)
    return os.path.abspath(os.path.join(CONFIG_DIR, path))


def build_engine_paths(config_path=None, db_path=None):
    return EnginePaths(
        log_dir=_env_path("JF_FETCH_LOG_DIR", LOG_DIR),
        db_path=db_path or os.environ.get("JF_FETCH_DB_PATH") or os.path.join(DATA_DIR, "database", "jf_fetch.sqlite"),
        config_path=resolve_config_path(config_path),
    )
