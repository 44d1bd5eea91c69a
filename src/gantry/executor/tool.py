"""Subprocess runner for the provisioning tool (and git lookups it needs)."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Sequence

logger = logging.getLogger(__name__)

# stderr fragments that indicate a network or provider hiccup worth retrying.
_TRANSIENT_RE = re.compile(
    r"timed out|timeout|connection reset|connection refused|TLS handshake"
    r"|temporary failure in name resolution|no such host|too many requests|\b429\b"
    r"|\b50[234]\b|service unavailable|throttl",
    re.IGNORECASE,
)


@dataclass
class ToolResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


ToolRunner = Callable[
    [Sequence[str], Path, Mapping[str, str] | None, float], Awaitable[ToolResult]
]


def is_transient(stderr: str) -> bool:
    return bool(_TRANSIENT_RE.search(stderr))


async def run_tool(
    args: Sequence[str],
    cwd: Path,
    env: Mapping[str, str] | None = None,
    timeout: float = 600,
) -> ToolResult:
    """Run a command in cwd and capture stdout/stderr separately.

    Kills the process on timeout rather than leaking it; the timeout is
    reported as a non-zero result whose stderr reads as transient.
    """
    argv = list(args)
    logger.debug("%s (cwd=%s)", " ".join(argv[:2]), cwd)
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ToolResult(
            argv, -1, "", f"Error: {' '.join(argv[:2])} timed out after {timeout}s (process killed)"
        )

    return ToolResult(
        argv,
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )
