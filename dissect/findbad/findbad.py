from __future__ import annotations

import enum
import logging
import os
import stat
from functools import cached_property
from typing import TYPE_CHECKING, NamedTuple

from dissect.util import ts

from dissect.findbad.c_ext import c_ext
from dissect.findbad.exceptions import Error
from dissect.findbad.layout import FilesystemLayout

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator
    from datetime import datetime

    from dissect.findbad.debugfs import DebugfsSession, DirEntry
    from dissect.findbad.ranges import BadRegionIndex

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_FINDBAD", "CRITICAL"))

DEFAULT_MAX_DEPTH = 4096

EXTENT_HEADER_SIZE = len(c_ext.ext4_extent_header)
EXTENT_ENTRY_SIZE = len(c_ext.ext4_extent)

REASON_DATA = "data"
REASON_INODE = "inode"


class FileType(enum.Enum):
    REGULAR = "regular"
    DIRECTORY = "directory"
    OTHER = "other"


class DamageReport(NamedTuple):
    path: str
    inum: int
    reason: str
    size: int | None = None
    mtime: datetime | None = None

    def __str__(self) -> str:
        return f"BAD {self.path}"

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "inode": self.inum,
            "reason": self.reason,
            "size": self.size,
            "mtime": self.mtime.isoformat() if self.mtime else None,
        }


class FindBad:
    """Find the files and directories of an ext2/3/4 filesystem that overlap damaged regions of the disk.

    The filesystem is walked top-down through a debugfs session. Every directory and regular file has its
    blocks (and the blocks holding its block map) checked against the bad region index, and every directory
    entry has the location of its inode record checked before the record is trusted.

    Args:
        session: An open debugfs session on the device.
        layout: The inode table locations of the filesystem.
        index: The damaged byte ranges of the device.
        max_depth: Directories nested deeper than this are not descended into.
    """

    def __init__(
        self,
        session: DebugfsSession,
        layout: FilesystemLayout,
        index: BadRegionIndex,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.session = session
        self.layout = layout
        self.index = index
        self.max_depth = max_depth

        self.block_size = layout.block_size
        self.pointers_per_block = self.block_size // 4
        self.session.block_size = self.block_size

        self.visited: set[int] = set()

    @classmethod
    async def open(cls, session: DebugfsSession, index: BadRegionIndex, **kwargs) -> FindBad:
        layout = FilesystemLayout.from_stats(await session.stats())
        return cls(session, layout, index, **kwargs)

    async def inode(self, inum: int, name: str | None = None) -> Inode:
        return Inode(self, inum, name, await self.session.inode_dump(inum))

    async def inodes(self, entries: list[DirEntry]) -> list[Inode]:
        """Fetch the inode records of ``entries``, all requested before the first reply is read."""
        bufs = await self.session.inode_dumps([entry.inode for entry in entries])
        return [Inode(self, entry.inode, entry.name, buf) for entry, buf in zip(entries, bufs)]

    def inode_is_safe(self, inum: int) -> bool:
        return self.layout.inode_is_safe(inum, self.index)

    def block_is_safe(self, block: int) -> bool:
        return self.index.block_is_safe(block, self.block_size)

    async def walk(self) -> AsyncIterator[DamageReport]:
        """Yield a report for every damaged file or directory, starting at the root directory.

        Directories are walked depth first, each one completely before the next entry of its parent. The
        directories that are still being walked are kept on an explicit stack, so the nesting depth of the
        filesystem is only bounded by ``max_depth``.
        """
        root_inum = c_ext.EXT2_ROOT_INO

        if not self.inode_is_safe(root_inum):
            yield DamageReport("/", root_inum, REASON_INODE)
            return

        root = await self.inode(root_inum, "")
        self.visited.add(root_inum)

        stack: list[tuple[str, int, Iterator[Inode]]] = []
        async for report in self._enter_dir("", root, 0, stack):
            yield report

        while stack:
            path, depth, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                continue

            if child.inum in self.visited:
                continue
            self.visited.add(child.inum)

            child_path = f"{path}/{child.name}"
            if child.is_file():
                if not await child.data_is_safe():
                    yield child.report(child_path)
            elif child.is_dir():
                async for report in self._enter_dir(child_path, child, depth + 1, stack):
                    yield report

    async def _enter_dir(
        self, path: str, node: Inode, depth: int, stack: list[tuple[str, int, Iterator[Inode]]]
    ) -> AsyncIterator[DamageReport]:
        # A damaged directory can't be listed reliably
        if not await node.data_is_safe():
            yield node.report(path or "/")
            return

        if depth >= self.max_depth:
            log.warning("Not descending into %s, maximum directory depth of %d reached", path, self.max_depth)
            return

        log.debug("Visiting directory %s (%r)", path or "/", node)

        entries = []
        for entry in await self.session.list_dir(node.inum):
            if self.inode_is_safe(entry.inode):
                entries.append(entry)
            else:
                yield DamageReport(f"{path}/{entry.name}", entry.inode, REASON_INODE)

        stack.append((path, depth, iter(await self.inodes(entries))))


class Inode:
    def __init__(self, fb: FindBad, inum: int, name: str | None, buf: bytes):
        self.fb = fb
        self.inum = inum
        self.name = name
        self.buf = buf

    def __repr__(self) -> str:
        return f"<inode {self.inum:d}>"

    @cached_property
    def inode(self) -> c_ext.ext4_inode:
        return c_ext.ext4_inode(self.buf)

    @cached_property
    def mode(self) -> int:
        return self.inode.i_mode

    @cached_property
    def type(self) -> FileType:
        fmt = stat.S_IFMT(self.mode)
        if fmt == stat.S_IFREG:
            return FileType.REGULAR
        if fmt == stat.S_IFDIR:
            return FileType.DIRECTORY
        return FileType.OTHER

    @cached_property
    def flags(self) -> int:
        return self.inode.i_flags

    @cached_property
    def size(self) -> int:
        # Before ext4 the high size field of a directory held its ACL
        if self.type == FileType.REGULAR:
            return (self.inode.i_size_high << 32) | self.inode.i_size_lo
        return self.inode.i_size_lo

    @cached_property
    def nblocks(self) -> int:
        return self.inode.i_blocks_lo

    @cached_property
    def blocks_in_use(self) -> int:
        return (self.size + self.fb.block_size - 1) // self.fb.block_size

    @cached_property
    def mtime(self) -> datetime:
        return ts.from_unix(self.inode.i_mtime)

    @cached_property
    def i_block(self) -> bytes:
        return self.inode.i_block

    @property
    def uses_extents(self) -> bool:
        return bool(self.flags & c_ext.EXT4_EXTENTS_FL)

    @property
    def has_inline_data(self) -> bool:
        return bool(self.flags & c_ext.EXT4_INLINE_DATA_FL)

    def is_dir(self) -> bool:
        return self.type == FileType.DIRECTORY

    def is_file(self) -> bool:
        return self.type == FileType.REGULAR

    def report(self, path: str) -> DamageReport:
        return DamageReport(path, self.inum, REASON_DATA, self.size, self.mtime)

    async def data_is_safe(self) -> bool:
        """Return whether none of the blocks of this file or directory overlap a bad range.

        Blocks that only hold block mapping information (extent tree nodes, indirect blocks) count too.
        Those are fetched lazily and the check stops at the first damaged block that is found.
        """
        if self.type == FileType.OTHER:
            raise Error(f"{self!r} is not a regular file or directory")

        if self.has_inline_data:
            # The data lives in the inode record itself
            return True

        if self.uses_extents:
            return await self._extents_are_safe(self.i_block)
        return await self._blocks_are_safe()

    async def _extents_are_safe(self, buf: bytes, expected_depth: int | None = None) -> bool:
        header = c_ext.ext4_extent_header(buf)
        if header.eh_magic != c_ext.EXT4_EXT_MAGIC:
            raise Error(f"Invalid extent header magic in {self!r}: 0x{header.eh_magic:04x}")

        depth = header.eh_depth
        if depth > c_ext.EXT4_EXT_MAX_DEPTH or (expected_depth is not None and depth != expected_depth):
            raise Error(f"Invalid extent tree depth in {self!r}: {depth}")

        num_entries = header.eh_entries
        max_entries = (len(buf) - EXTENT_HEADER_SIZE) // EXTENT_ENTRY_SIZE
        if num_entries > max_entries:
            log.warning("Extent node of %r claims %d entries, only %d fit", self, num_entries, max_entries)
            num_entries = max_entries

        entries_buf = buf[EXTENT_HEADER_SIZE:]
        if depth == 0:
            for extent in c_ext.ext4_extent[num_entries](entries_buf):
                length = extent.ee_len
                if length > c_ext.EXT_INIT_MAX_LEN:
                    # Uninitialized extent, still allocated on disk
                    length -= c_ext.EXT_INIT_MAX_LEN

                if not length:
                    continue

                if not self.fb.index.blocks_are_safe(extent.ee_start_lo, length, self.fb.block_size):
                    log.info("%r: extent %d+%d overlaps a bad range", self, extent.ee_start_lo, length)
                    return False
        else:
            for idx in c_ext.ext4_extent_idx[num_entries](entries_buf):
                child = idx.ei_leaf_lo
                if not self.fb.block_is_safe(child):
                    log.info("%r: extent tree node %d overlaps a bad range", self, child)
                    return False

                child_buf = await self.fb.session.block_dump(child)
                if not await self._extents_are_safe(child_buf, depth - 1):
                    return False

        return True

    async def _blocks_are_safe(self) -> bool:
        pointers = c_ext.uint32[c_ext.EXT2_N_BLOCKS](self.i_block)
        remaining = self.blocks_in_use

        num_direct = min(remaining, c_ext.EXT2_NDIR_BLOCKS)
        for block in pointers[:num_direct]:
            if block and not self.fb.block_is_safe(block):
                log.info("%r: block %d overlaps a bad range", self, block)
                return False
        remaining -= num_direct

        for level, block in enumerate(pointers[c_ext.EXT2_IND_BLOCK :], 1):
            if remaining <= 0:
                break

            num_blocks = min(remaining, self.fb.pointers_per_block**level)
            if not await self._indirect_is_safe(block, level, num_blocks):
                return False
            remaining -= num_blocks

        return True

    async def _indirect_is_safe(self, block: int, level: int, num_blocks: int) -> bool:
        """Check the first ``num_blocks`` data blocks mapped by the ``level`` deep indirect block ``block``."""
        if not block:
            # Sparse, nothing allocated below here
            return True

        if not self.fb.block_is_safe(block):
            log.info("%r: level %d indirect block %d overlaps a bad range", self, level, block)
            return False

        blocks_per_pointer = self.fb.pointers_per_block ** (level - 1)
        num_pointers = (num_blocks + blocks_per_pointer - 1) // blocks_per_pointer

        buf = await self.fb.session.block_dump(block)
        for i, pointer in enumerate(c_ext.uint32[num_pointers](buf)):
            if level == 1:
                if pointer and not self.fb.block_is_safe(pointer):
                    log.info("%r: block %d overlaps a bad range", self, pointer)
                    return False
            else:
                nested_blocks = min(blocks_per_pointer, num_blocks - (i * blocks_per_pointer))
                if not await self._indirect_is_safe(pointer, level - 1, nested_blocks):
                    return False

        return True
