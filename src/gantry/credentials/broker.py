"""Credential broker — short-lived, stage-scoped credentials.

Secrets are handed to the tool through its environment only. They are never
logged, never written to the run record, and dropped at the stage boundary.
"""

from __future__ import annotations

import contextlib
import datetime
import logging
import os
import uuid
from typing import AsyncIterator, Mapping, Protocol

from pydantic import SecretStr

from gantry.clock import Clock, utc_now
from gantry.errors import CredentialResolutionError
from gantry.models.credentials import Permission, ScopedCredential
from gantry.models.stages import Environment, StageKind

logger = logging.getLogger(__name__)


class CredentialIssuer(Protocol):
    """Source of raw secret material for an environment and permission level."""

    async def issue(self, environment: Environment, permission: Permission) -> dict[str, str]: ...


class EnvironmentCredentialIssuer:
    """Reads ``<prefix><ENV>_<PERMISSION>_<NAME>`` variables.

    GANTRY_CREDENTIAL_STAGING_WRITE_AWS_ACCESS_KEY_ID=... is handed to apply
    stages in staging as AWS_ACCESS_KEY_ID.
    """

    def __init__(
        self,
        prefix: str = "GANTRY_CREDENTIAL_",
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    async def issue(self, environment: Environment, permission: Permission) -> dict[str, str]:
        scope = f"{self._prefix}{environment.value.upper()}_{permission.value.upper()}_"
        values = {
            key[len(scope):]: value
            for key, value in self._environ.items()
            if key.startswith(scope) and len(key) > len(scope)
        }
        if not values:
            raise CredentialResolutionError(
                f"No {permission.value} credentials configured for {environment.value}"
            )
        return values


def permission_for(stage: StageKind) -> Permission:
    return Permission.WRITE if stage is StageKind.APPLY else Permission.READ


class CredentialBroker:
    def __init__(
        self,
        issuer: CredentialIssuer,
        *,
        clock: Clock = utc_now,
        ttl: datetime.timedelta = datetime.timedelta(hours=1),
    ) -> None:
        self._issuer = issuer
        self._clock = clock
        self._ttl = ttl
        self._active: dict[str, ScopedCredential] = {}

    async def resolve(
        self,
        stage_kind: StageKind,
        environment: Environment,
        *,
        run_id: str = "",
        ttl: datetime.timedelta | None = None,
    ) -> ScopedCredential:
        """Issue a credential for one stage. Fails closed."""
        permission = permission_for(stage_kind)
        try:
            values = await self._issuer.issue(environment, permission)
        except CredentialResolutionError:
            raise
        except Exception as e:
            raise CredentialResolutionError(
                f"Credential issuer failed for {stage_kind.value}/{environment.value}: {type(e).__name__}"
            ) from e
        if not values:
            raise CredentialResolutionError(
                f"Credential issuer returned nothing for {stage_kind.value}/{environment.value}"
            )

        now = self._clock()
        credential = ScopedCredential(
            credential_id=uuid.uuid4().hex[:12],
            run_id=run_id,
            stage=stage_kind,
            environment=environment,
            permission=permission,
            values={name: SecretStr(value) for name, value in values.items()},
            issued_at=now,
            expires_at=now + (ttl or self._ttl),
        )
        self._active[credential.credential_id] = credential
        logger.info(
            "Issued %s credential %s for run %s %s/%s (%d values, expires %s)",
            permission.value, credential.credential_id, run_id or "-",
            stage_kind.value, environment.value, len(values), credential.expires_at.isoformat(),
        )
        return credential

    def revoke(self, credential: ScopedCredential) -> None:
        if self._active.pop(credential.credential_id, None) is not None:
            logger.info("Revoked credential %s", credential.credential_id)

    def active(self) -> list[ScopedCredential]:
        return list(self._active.values())

    @contextlib.asynccontextmanager
    async def scoped(
        self,
        run_id: str,
        stage_kind: StageKind,
        environment: Environment,
        ttl: datetime.timedelta | None = None,
    ) -> AsyncIterator[ScopedCredential]:
        """Credential valid for the body only; revoked at the stage boundary."""
        credential = await self.resolve(stage_kind, environment, run_id=run_id, ttl=ttl)
        try:
            yield credential
        finally:
            self.revoke(credential)
