from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from dissect.findbad.shell import Shell


def test_shell_env(tmp_path: Path) -> None:
    shell = Shell(tmp_path, {"A": "1", "B": None})

    assert shell.workdir == tmp_path.resolve()
    assert shell.env == {"A": "1"}

    shell.set_env("C", "3")
    shell.delete_env("A")
    shell.delete_env("missing")
    assert shell.env == {"C": "3"}

    sub = shell.subshell()
    sub.set_env("D", "4")
    assert "D" not in shell.env
    assert sub.workdir == shell.workdir


def test_shell_cd(tmp_path: Path) -> None:
    (tmp_path / "dir").mkdir()
    (tmp_path / "file").write_text("")
    shell = Shell(tmp_path)

    shell.cd("dir")
    assert shell.workdir == (tmp_path / "dir").resolve()

    shell.cd("..")
    assert shell.workdir == tmp_path.resolve()

    with pytest.raises(NotADirectoryError):
        shell.cd("file")


def test_shell_spawn(tmp_path: Path) -> None:
    shell = Shell(tmp_path, {"PATH": "/usr/bin"})

    with patch("asyncio.create_subprocess_exec", AsyncMock()) as create:
        asyncio.run(shell.spawn("debugfs", "-c", "/dev/sdb1"))

    create.assert_awaited_once_with(
        "debugfs",
        "-c",
        "/dev/sdb1",
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=tmp_path.resolve(),
        env={"PATH": "/usr/bin"},
    )
