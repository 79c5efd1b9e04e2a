from __future__ import annotations

import asyncio
import struct
from typing import TYPE_CHECKING

import pytest

from dissect.findbad.debugfs import PROMPT, DebugfsSession
from dissect.findbad.expect import Expect
from dissect.findbad.findbad import FindBad
from dissect.findbad.layout import FilesystemLayout
from dissect.findbad.ranges import BadRegionIndex

if TYPE_CHECKING:
    from collections.abc import Iterable

BLOCK_SIZE = 4096
INODE_TABLE_BLOCK = 1057
INODE_TABLE_OFFSET = INODE_TABLE_BLOCK * BLOCK_SIZE

S_IFREG = 0o100644
S_IFDIR = 0o040755
S_IFLNK = 0o120777
EXTENTS_FL = 0x80000


def hexdump(buf: bytes) -> str:
    """Render ``buf`` the way debugfs does for ``id`` and ``bd``."""
    lines = []
    for offset in range(0, len(buf), 16):
        line = buf[offset : offset + 16].ljust(16, b"\x00")
        words = " ".join(line[i : i + 2].hex() for i in range(0, 16, 2))
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in line)
        lines.append(f"{offset:04o}  {words}  {text}")
    return "\n".join(lines) + "\n\n"


def make_inode(
    mode: int,
    size: int = 0,
    i_block: bytes = b"",
    flags: int = 0,
    nblocks: int = 0,
    mtime: int = 0,
) -> bytes:
    buf = bytearray(256)
    struct.pack_into("<HHI", buf, 0x00, mode, 0, size & 0xFFFFFFFF)
    struct.pack_into("<I", buf, 0x10, mtime)
    struct.pack_into("<II", buf, 0x1C, nblocks, flags)
    buf[0x28 : 0x28 + 60] = i_block.ljust(60, b"\x00")
    struct.pack_into("<I", buf, 0x6C, size >> 32)
    return bytes(buf)


def extent_leaf(extents: Iterable[tuple[int, int]], max_entries: int = 4) -> bytes:
    extents = list(extents)
    buf = struct.pack("<HHHHI", 0xF30A, len(extents), max_entries, 0, 0)
    logical = 0
    for start, length in extents:
        buf += struct.pack("<IHHI", logical, length, 0, start)
        logical += length
    return buf


def extent_index(children: Iterable[int], depth: int = 1, max_entries: int = 4) -> bytes:
    children = list(children)
    buf = struct.pack("<HHHHI", 0xF30A, len(children), max_entries, depth, 0)
    for i, child in enumerate(children):
        buf += struct.pack("<IIHH", i * 1000, child, 0, 0)
    return buf


def block_pointers(pointers: Iterable[int], size: int = 0) -> bytes:
    pointers = list(pointers)
    return struct.pack(f"<{len(pointers)}I", *pointers).ljust(size, b"\x00")


def make_stats(groups: dict[int, int], block_size: int = 4096, inodes_per_group: int = 8028) -> str:
    lines = [
        "Filesystem volume name:   <none>",
        "Last mounted on:          /mnt",
        "Filesystem magic number:  0xEF53",
        "Filesystem features:      has_journal ext_attr resize_inode dir_index filetype extent sparse_super",
        "Inode count:              65536",
        f"Block size:               {block_size}",
        f"Inodes per group:         {inodes_per_group}",
        "Inode size:\t          256",
        "Directories:              2",
    ]
    for group, table in groups.items():
        lines.append(
            f" Group {group:2d}: block bitmap at {table - 32}, inode bitmap at {table - 16}, inode table at {table}"
        )
        lines.append("           23513 free blocks, 8017 free inodes, 2 directories")
    return "\n".join(lines) + "\n"


class FakeDebugfs:
    """Stands in for the stdin of a debugfs process and answers through an :class:`Expect`.

    Replies are fed asynchronously, in the order the commands were written, like the real thing.
    """

    def __init__(self):
        self.inodes: dict[int, bytes] = {}
        self.blocks: dict[int, bytes] = {}
        self.dirs: dict[int, list[tuple[int, str]]] = {}
        self.stats = make_stats({0: INODE_TABLE_BLOCK, 1: INODE_TABLE_BLOCK + 512})
        self.commands: list[str] = []
        self.expect: Expect | None = None
        self.closed = False
        self._pending = b""

    def add_dir(self, inum: int, entries: list[tuple[int, str]], i_block: bytes | None = None) -> None:
        self.inodes[inum] = make_inode(S_IFDIR, BLOCK_SIZE, i_block or extent_leaf([(9000 + inum, 1)]), EXTENTS_FL)
        self.dirs[inum] = entries

    def add_file(self, inum: int, extents: list[tuple[int, int]], mode: int = S_IFREG) -> None:
        size = sum(length for _, length in extents) * BLOCK_SIZE
        self.inodes[inum] = make_inode(mode, size, extent_leaf(extents), EXTENTS_FL)

    def reply(self, cmd: str) -> str:
        if cmd == "stats":
            return self.stats
        if cmd.startswith("id <"):
            return hexdump(self.inodes[int(cmd[4:-1])])
        if cmd.startswith("bd "):
            return hexdump(self.blocks[int(cmd[3:])])
        if cmd.startswith("ls -p <"):
            inum = int(cmd[7:-1])
            lines = [f"/{inum}/040755/0/0/./", "/2/040755/0/0/../"]
            lines += [f"/{child}/100644/0/0/{name}/0/" for child, name in self.dirs[inum]]
            return "\n".join(lines) + "\n"
        raise AssertionError(f"Unexpected command {cmd!r}")

    def write(self, data: bytes) -> None:
        self._pending += data
        while b"\n" in self._pending:
            line, self._pending = self._pending.split(b"\n", 1)
            cmd = line.decode()
            self.commands.append(cmd)
            response = f"  {cmd}\n{self.reply(cmd)}{PROMPT}  "
            asyncio.get_running_loop().call_soon(self.expect.feed_data, response.encode())

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    def session(self) -> DebugfsSession:
        self.expect = Expect(PROMPT)
        return DebugfsSession(self, self.expect)

    async def findbad(self, index: BadRegionIndex) -> FindBad:
        return await FindBad.open(self.session(), index)


@pytest.fixture
def fake_debugfs() -> FakeDebugfs:
    return FakeDebugfs()


@pytest.fixture
def layout() -> FilesystemLayout:
    return FilesystemLayout({0: INODE_TABLE_OFFSET, 1: INODE_TABLE_OFFSET + 512 * BLOCK_SIZE})
