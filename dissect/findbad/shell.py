from __future__ import annotations

import asyncio
import logging
import os
import shlex
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_FINDBAD", "CRITICAL"))


class Shell:
    """Working directory and environment to spawn processes with, like a (sub)shell in bash."""

    def __init__(self, workdir: str | Path | None = None, env: Mapping[str, str | None] | None = None):
        self.workdir = None
        self.cd(workdir or os.getcwd())
        self.env = {key: value for key, value in (os.environ if env is None else env).items() if value is not None}

    def __repr__(self) -> str:
        return f"<Shell workdir={str(self.workdir)!r}>"

    def cd(self, path: str | Path) -> None:
        workdir = Path(self.workdir or os.getcwd(), path).resolve()
        if not workdir.is_dir():
            raise NotADirectoryError(f"cd into {str(workdir)!r} which is not a directory")

        log.debug("cd %s", workdir)
        self.workdir = workdir

    def set_env(self, name: str, value: str) -> None:
        log.debug("%s=%s", name, value)
        self.env[name] = value

    def delete_env(self, name: str) -> None:
        log.debug("unset %s", name)
        self.env.pop(name, None)

    def subshell(self) -> Shell:
        return Shell(self.workdir, self.env)

    async def spawn(self, *args: str, merge_stderr: bool = True) -> asyncio.subprocess.Process:
        """Start ``args`` with piped stdin and stdout.

        Stderr is merged into stdout unless ``merge_stderr`` is false, in which case it is inherited.
        """
        log.debug("Executing %s", shlex.join(args))
        return await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT if merge_stderr else None,
            cwd=self.workdir,
            env=self.env,
        )
