"""Pipeline defaults, snapshotted into every run at trigger time.

A run keeps the snapshot it was created with, so changing these values never
alters the lease or approval window of a run already in flight.
"""

from __future__ import annotations

PIPELINE_DEFAULTS: dict = {
    # State lock
    "lock_lease_seconds": 600,
    "lock_renew_interval_seconds": 120,
    "lock_max_attempts": 5,
    "lock_backoff_seconds": 5.0,
    "lock_backoff_max_seconds": 60.0,
    # Approval gate
    "approval_timeout_seconds": 3600,
    # Plans older than this are re-planned before apply
    "plan_max_age_seconds": 3600,
    "max_replans": 2,
    # Provisioning tool
    "tool_max_attempts": 3,
    "tool_retry_backoff_seconds": 10.0,
    "tool_timeouts": {
        "init": 300,
        "fmt": 60,
        "validate": 120,
        "plan": 1800,
        "show": 120,
        "apply": 3600,
    },
    # Credentials
    "credential_ttl_seconds": 3600,
    # Diagnostics kept on each stage execution
    "output_tail_chars": 4000,
}

# Role an approver must hold per environment tier.
APPROVAL_ROLES: dict[str, str] = {
    "staging": "deployer",
    "production": "release-manager",
}


def get_config_snapshot() -> dict:
    """Return a frozen snapshot of all config for a pipeline run."""
    return {
        "pipeline": {
            **PIPELINE_DEFAULTS,
            "tool_timeouts": {**PIPELINE_DEFAULTS["tool_timeouts"]},
        },
        "approval_roles": {**APPROVAL_ROLES},
    }
