"""Scoped, short-lived credentials handed to a single stage."""

from __future__ import annotations

import datetime
from enum import Enum

from pydantic import BaseModel, SecretStr

from gantry.models.stages import Environment, StageKind


class Permission(str, Enum):
    READ = "read"
    WRITE = "write"


class ScopedCredential(BaseModel):
    """Secret values are ``SecretStr`` so reprs, logs and dumps stay masked."""

    credential_id: str
    run_id: str
    stage: StageKind
    environment: Environment
    permission: Permission
    values: dict[str, SecretStr]
    issued_at: datetime.datetime
    expires_at: datetime.datetime

    def expired(self, now: datetime.datetime) -> bool:
        return now >= self.expires_at

    def as_env(self) -> dict[str, str]:
        return {name: value.get_secret_value() for name, value in self.values.items()}
