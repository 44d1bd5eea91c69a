"""Load bootstrap configuration from environment variables."""

from __future__ import annotations

import os

from gantry.models.config import BootstrapConfig

_ENV_PREFIX = "GANTRY_"

_FIELD_MAP = {
    "postgres_url": "POSTGRES_URL",
    "postgres_url_sync": "POSTGRES_URL_SYNC",
    "redis_url": "REDIS_URL",
    "workspace_dir": "WORKSPACE_DIR",
    "tool_binary": "TOOL_BINARY",
    "role_assignments": "ROLE_ASSIGNMENTS",
    "lock_admin_role": "LOCK_ADMIN_ROLE",
    "credential_env_prefix": "CREDENTIAL_ENV_PREFIX",
    "job_spawner": "JOB_SPAWNER",
    "k8s_namespace": "K8S_NAMESPACE",
    "worker_image": "WORKER_IMAGE",
    "sweep_interval_seconds": "SWEEP_INTERVAL_SECONDS",
    "controller_host": "CONTROLLER_HOST",
    "controller_port": "CONTROLLER_LISTEN_PORT",
    "log_level": "LOG_LEVEL",
}


def load_bootstrap_config() -> BootstrapConfig:
    """Build BootstrapConfig from env vars (prefixed GANTRY_) with defaults."""
    overrides: dict[str, str] = {}
    for field_name, env_suffix in _FIELD_MAP.items():
        env_key = f"{_ENV_PREFIX}{env_suffix}"
        val = os.environ.get(env_key)
        if val is not None:
            overrides[field_name] = val
    return BootstrapConfig(**overrides)
