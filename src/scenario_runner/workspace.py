"""
Workspace setup for sessions.

A session either points at an existing directory or names a repository that
is cloned into a per-run workspace before the application starts.
"""

import asyncio
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

from scenario_runner.errors import ErrorKind, SetupError
from scenario_runner.logging import get_logger
from scenario_runner.models import SessionConfig

logger = get_logger(__name__)

SETUP_COMMAND_TIMEOUT = 300.0
CLONE_TIMEOUT = 600.0


@dataclass
class WorkspaceSetupResult:
    """Outcome of preparing a session workspace."""

    success: bool
    workspace_path: Optional[str]
    repository_url: Optional[str] = None
    ref: Optional[str] = None
    setup_duration_ms: int = 0
    error: Optional[str] = None
    logs: list[str] = field(default_factory=list)


class WorkspaceSetup(Protocol):
    """Prepares the workspace a session opens."""

    async def setup_workspace(self, config: SessionConfig, run_id: str) -> WorkspaceSetupResult:
        ...

    def cleanup(self, run_id: str) -> None:
        ...


CommandRunner = Callable[[list[str], Optional[Path], float], Awaitable[tuple[int, str]]]


async def run_command(args: list[str], cwd: Optional[Path], timeout: float) -> tuple[int, str]:
    """
    Run a command and return (exit code, combined output).

    Raises:
        TimeoutError: If the command does not finish within timeout seconds
    """
    env = dict(os.environ, CI="true", TERM="dumb", GIT_TERMINAL_PROMPT="0")
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise TimeoutError(f"Command timed out after {timeout:.0f}s: {' '.join(args)}")
    return proc.returncode, stdout.decode(errors="replace")


def repo_name_from_url(url: str) -> str:
    """Extract the repository name from an https or ssh git URL."""
    match = re.search(r"[/:]([^/]+?)(?:\.git)?/?$", url)
    return match.group(1) if match else "repo"


class GitWorkspaceSetup:
    """
    Resolves workspaces from local paths or shallow git clones.

    Clones land in <workspaces_path>/<run_id>/<repo name>.
    """

    def __init__(self, workspaces_path: Path, runner: CommandRunner = run_command):
        self.workspaces_path = Path(workspaces_path)
        self._run = runner

    async def setup_workspace(self, config: SessionConfig, run_id: str) -> WorkspaceSetupResult:
        start = time.monotonic()
        logs: list[str] = []

        def elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        if config.workspace_path and not config.repository:
            path = Path(config.workspace_path).expanduser()
            if not path.exists():
                return WorkspaceSetupResult(
                    success=False,
                    workspace_path=str(path),
                    setup_duration_ms=elapsed(),
                    error=f"Workspace path does not exist: {path}",
                    logs=logs,
                )
            logs.append(f"Using existing workspace: {path}")
            return WorkspaceSetupResult(
                success=True,
                workspace_path=str(path),
                setup_duration_ms=elapsed(),
                logs=logs,
            )

        if not config.repository:
            logs.append("No workspace or repository configured")
            return WorkspaceSetupResult(success=True, workspace_path=None, logs=logs)

        repo = config.repository
        target = self.workspaces_path / run_id / repo_name_from_url(repo.url)
        target.parent.mkdir(parents=True, exist_ok=True)
        logs.append(f"Cloning {repo.url} into {target}")
        logger.info("Cloning workspace repository", url=repo.url, ref=repo.ref, path=str(target))

        try:
            args = ["git", "clone", "--depth=1"]
            if repo.ref:
                args += ["--branch", repo.ref]
            args += [repo.url, str(target)]
            await self._check(args, None, CLONE_TIMEOUT, logs)

            final = target
            if repo.subdir:
                final = target / repo.subdir
                if not final.exists():
                    raise SetupError(f"Subdirectory does not exist: {repo.subdir}")
                logs.append(f"Using subdirectory: {repo.subdir}")

            for command in repo.setup_commands:
                logs.append(f"Running: {command}")
                await self._check(["sh", "-c", command], final, SETUP_COMMAND_TIMEOUT, logs)

        except (SetupError, TimeoutError, OSError) as e:
            logs.append(f"ERROR: {e}")
            logger.error("Workspace setup failed", url=repo.url, error=str(e))
            return WorkspaceSetupResult(
                success=False,
                workspace_path=str(target),
                repository_url=repo.url,
                ref=repo.ref,
                setup_duration_ms=elapsed(),
                error=str(e),
                logs=logs,
            )

        return WorkspaceSetupResult(
            success=True,
            workspace_path=str(final),
            repository_url=repo.url,
            ref=repo.ref,
            setup_duration_ms=elapsed(),
            logs=logs,
        )

    async def _check(self, args: list[str], cwd: Optional[Path], timeout: float, logs: list[str]) -> None:
        code, output = await self._run(args, cwd, timeout)
        if code != 0:
            raise SetupError(
                f"Command failed with code {code}: {output.strip()[-500:]}",
                kind=ErrorKind.WORKSPACE_FAILED,
            )
        logs.append("  ok")

    def cleanup(self, run_id: str) -> None:
        """Remove every workspace cloned for a run."""
        path = self.workspaces_path / run_id
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
