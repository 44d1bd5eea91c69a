"""Change events — Pydantic schemas for trigger ingestion."""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from pydantic import BaseModel, Field, field_validator

from gantry.models.stages import Environment, TriggerKind

# Git refs and commit SHAs. A leading dash would be read as a git option.
_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")

# Shell metacharacters that must never reach a tool working directory.
_SHELL_METACHAR_RE = re.compile(r"[;|`\n$&<>\\]")

_STATE_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")

_ALLOWED_URL_PREFIXES: tuple[str, ...] = ("https://", "ssh://", "git@", "file://")


def repo_name_from_url(repo_url: str) -> str:
    return repo_url.rstrip("/").split("/")[-1].split(":")[-1].removesuffix(".git")


class ChangeEvent(BaseModel):
    """Pull-request or merge event as delivered by the Git-hosting collaborator."""

    kind: TriggerKind
    action: str = Field(default="opened", pattern=r"^(opened|updated|synchronize|merged)$")
    change_ref: str = Field(..., min_length=1, max_length=255)
    repo_url: str = Field(..., min_length=1)
    environment: Environment
    state_key: str | None = Field(
        default=None,
        description="Remote state resource key. Derived from repo, directory and tier if omitted.",
    )
    working_dir: str = Field(
        default=".",
        description="Tool working directory, relative to the repository root.",
    )
    actor: str = Field(default="system", min_length=1, max_length=128)
    external_id: str | None = None

    @field_validator("change_ref")
    @classmethod
    def validate_change_ref(cls, v: str) -> str:
        v = v.strip()
        if not _REF_RE.match(v) or ".." in v:
            raise ValueError("change_ref is not a valid git ref or commit")
        return v

    @field_validator("repo_url")
    @classmethod
    def validate_repo_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(_ALLOWED_URL_PREFIXES):
            raise ValueError(
                f"repo_url must start with one of: {', '.join(_ALLOWED_URL_PREFIXES)}"
            )
        return v

    @field_validator("working_dir", mode="before")
    @classmethod
    def validate_working_dir(cls, v: str) -> str:
        v = (v or "").strip() or "."
        if _SHELL_METACHAR_RE.search(v):
            raise ValueError("working_dir contains disallowed shell metacharacters")
        path = PurePosixPath(v)
        if path.is_absolute() or ".." in path.parts:
            raise ValueError("working_dir must be a relative path inside the repository")
        return str(path)

    @field_validator("state_key")
    @classmethod
    def validate_state_key(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if not _STATE_KEY_RE.match(v):
            raise ValueError("state_key may only contain letters, digits, '.', '_', '/' and '-'")
        return v

    @property
    def repo_name(self) -> str:
        return repo_name_from_url(self.repo_url)

    def resolved_state_key(self) -> str:
        if self.state_key:
            return self.state_key
        directory = "root" if self.working_dir == "." else self.working_dir
        return f"{self.repo_name}/{directory}/{self.environment.value}"
