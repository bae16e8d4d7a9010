from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("AVL_DB_PATH", "avalauncher.db")
    docker_host: str = os.getenv("AVL_DOCKER_HOST", "unix:///var/run/docker.sock")
    label_key: str = os.getenv("AVL_LABEL_KEY", "avalauncher.node")
    node_data_dir: str = os.getenv("AVL_NODE_DATA_DIR", "/root/.avalanchego")

    # Timing
    reconcile_interval_s: int = _env_int("AVL_RECONCILE_INTERVAL_S", 15)
    runtime_timeout_s: float = _env_float("AVL_RUNTIME_TIMEOUT_S", 60.0)
    stop_timeout_s: int = _env_int("AVL_STOP_TIMEOUT_S", 30)
    lock_wait_s: float = _env_float("AVL_LOCK_WAIT_S", 0.5)
    runtime_workers: int = _env_int("AVL_RUNTIME_WORKERS", 16)
    identity_timeout_s: float = _env_float("AVL_IDENTITY_TIMEOUT_S", 2.0)
    fetch_node_identity: bool = _env_bool("AVL_FETCH_NODE_IDENTITY", True)

    # Events
    events_default_limit: int = _env_int("AVL_EVENTS_DEFAULT_LIMIT", 50)
    events_max_limit: int = _env_int("AVL_EVENTS_MAX_LIMIT", 1000)

    # API
    admin_key: str | None = os.getenv("AVL_ADMIN_KEY")
    api_host: str = os.getenv("AVL_API_HOST", "0.0.0.0")
    api_port: int = _env_int("AVL_API_PORT", 8080)
    log_level: str = os.getenv("AVL_LOG_LEVEL", "INFO")


settings = Settings()
