from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import TYPE_CHECKING, NamedTuple

from dissect.findbad.exceptions import ProtocolError
from dissect.findbad.expect import Expect
from dissect.findbad.shell import Shell

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_FINDBAD", "CRITICAL"))

DEBUGFS = "debugfs"
PROMPT = "debugfs:"

INODE_RECORD_SIZE = 256
DEFAULT_BLOCK_SIZE = 4096

# 0000  ed41 0000 0010 0000 c5d2 5366 c5d2 5366  .A........Sf..Sf
HEXDUMP_RE = re.compile(
    r"^([0-7]{4,})  ([0-9a-fA-F]{4}) ([0-9a-fA-F]{4}) ([0-9a-fA-F]{4}) ([0-9a-fA-F]{4}) "
    r"([0-9a-fA-F]{4}) ([0-9a-fA-F]{4}) ([0-9a-fA-F]{4}) ([0-9a-fA-F]{4})",
    re.MULTILINE,
)

# /<inode>/<mode>/<uid>/<gid>/<name>/<size>/
DIRENTRY_RE = re.compile(r"^/(\d+)/\d+/\d+/\d+/([^/\r\n]+)", re.MULTILINE)


class DirEntry(NamedTuple):
    inode: int
    name: str


def parse_hexdump(text: str, size: int) -> bytes:
    """Parse the hexdump debugfs prints for ``id`` and ``bd`` into a buffer of ``size`` bytes.

    Every line holds an octal offset followed by 16 bytes as eight groups of four hex digits, in memory
    order. Lines that don't look like that are ignored and the bytes they would describe stay zero.
    """
    buf = bytearray(size)

    for match in HEXDUMP_RE.finditer(text):
        offset = int(match.group(1), 8)
        if offset >= size:
            continue

        line = bytes.fromhex("".join(match.groups()[1:]))
        buf[offset : offset + len(line)] = line[: size - offset]

    return bytes(buf)


def parse_dirlist(text: str) -> list[DirEntry]:
    """Parse the output of ``ls -p``, skipping the ``.`` and ``..`` entries."""
    entries = []
    for match in DIRENTRY_RE.finditer(text):
        name = match.group(2)
        if name in (".", ".."):
            continue
        entries.append(DirEntry(int(match.group(1)), name))
    return entries


class DebugfsSession:
    """An interactive debugfs process.

    Commands can be issued concurrently from multiple tasks. Each command is written and its reply is
    claimed from the :class:`Expect` in a single step, so replies are always paired with the command
    that produced them.
    """

    def __init__(
        self,
        stdin: asyncio.StreamWriter,
        expect: Expect,
        process: asyncio.subprocess.Process | None = None,
    ):
        self.stdin = stdin
        self.expect = expect
        self.process = process

        self.block_size = DEFAULT_BLOCK_SIZE
        self._drain_lock = asyncio.Lock()

    def __repr__(self) -> str:
        pid = self.process.pid if self.process else None
        return f"<DebugfsSession pid={pid}>"

    @classmethod
    async def open(cls, device: str | Path, shell: Shell | None = None) -> DebugfsSession:
        """Start debugfs in catastrophic mode on ``device``.

        Catastrophic mode (``-c``) opens the filesystem read-only and skips reading the inode and block
        bitmaps, which may well live in the damaged regions.
        """
        shell = shell or Shell()
        process = await shell.spawn(DEBUGFS, "-c", str(device))
        log.info("Started debugfs on %s (pid %d)", device, process.pid)

        expect = Expect(PROMPT)
        expect.attach(process.stdout)
        session = cls(process.stdin, expect, process)

        # The first prompt follows the banner
        banner = await expect.next()
        log.debug("debugfs banner: %r", banner)
        return session

    async def __aenter__(self) -> DebugfsSession:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _send(self, cmd: str) -> asyncio.Future[str]:
        if "\n" in cmd:
            raise ValueError(f"Command can't contain a newline: {cmd!r}")

        log.debug("> %s", cmd)
        self.stdin.write(f"{cmd}\n".encode())
        return self.expect.next()

    async def _drain(self) -> None:
        # Only one task may wait on the flow control of a stream at a time
        async with self._drain_lock:
            await self.stdin.drain()

    async def run_command(self, cmd: str) -> str:
        """Run ``cmd`` and return its output without the echoed command line."""
        reply = self._send(cmd)
        await self._drain()
        return _strip_echo(cmd, await reply)

    async def run_commands(self, cmds: Iterable[str]) -> list[str]:
        """Run all of ``cmds`` and return their outputs in the same order.

        Every command is written before the first reply is read, and the channel is drained once for the
        whole batch.
        """
        cmds = list(cmds)
        for cmd in cmds:
            if "\n" in cmd:
                raise ValueError(f"Command can't contain a newline: {cmd!r}")

        replies = [(cmd, self._send(cmd)) for cmd in cmds]
        await self._drain()
        return [_strip_echo(cmd, await reply) for cmd, reply in replies]

    async def stats(self) -> str:
        return await self.run_command("stats")

    async def inode_dump(self, inum: int) -> bytes:
        return parse_hexdump(await self.run_command(f"id <{inum}>"), INODE_RECORD_SIZE)

    async def inode_dumps(self, inums: Iterable[int]) -> list[bytes]:
        outputs = await self.run_commands([f"id <{inum}>" for inum in inums])
        return [parse_hexdump(output, INODE_RECORD_SIZE) for output in outputs]

    async def block_dump(self, block: int) -> bytes:
        return parse_hexdump(await self.run_command(f"bd {block}"), self.block_size)

    async def list_dir(self, inum: int) -> list[DirEntry]:
        return parse_dirlist(await self.run_command(f"ls -p <{inum}>"))

    async def close(self) -> None:
        """Close the command channel and wait for debugfs to exit.

        Closing stdin is how debugfs is told to quit, so its exit status is not checked.
        """
        self.expect.dispose()
        if not self.stdin.is_closing():
            self.stdin.close()

        if self.process is not None:
            returncode = await self.process.wait()
            log.debug("debugfs exited with %s", returncode)


def _strip_echo(cmd: str, response: str) -> str:
    # The first line only holds the echoed command
    _, sep, output = response.partition("\n")
    if not sep:
        raise ProtocolError(f"Got weird response for {cmd!r}: {response!r}")
    return output
