from __future__ import annotations

import logging
import os
import re
from typing import TYPE_CHECKING

from dissect.findbad.exceptions import LayoutError, ProtocolError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from dissect.findbad.ranges import BadRegionIndex

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_FINDBAD", "CRITICAL"))

# Used when the stats output doesn't mention them
DEFAULT_BLOCK_SIZE = 4096
DEFAULT_INODE_SIZE = 256
DEFAULT_INODES_PER_GROUP = 8028

STATS_BANNER = "Filesystem features"
GROUP_RE = re.compile(r"Group +(\d+): [^\n\r]* inode table at (\d+)")
BLOCK_SIZE_RE = re.compile(r"^Block size:[ \t]+(\d+)", re.MULTILINE)
INODE_SIZE_RE = re.compile(r"^Inode size:[ \t]+(\d+)", re.MULTILINE)
INODES_PER_GROUP_RE = re.compile(r"^Inodes per group:[ \t]+(\d+)", re.MULTILINE)


class FilesystemLayout:
    """Where the inode tables of a filesystem live.

    Args:
        inode_tables: Mapping of block group number to the byte offset of its inode table.
    """

    def __init__(
        self,
        inode_tables: Mapping[int, int],
        block_size: int = DEFAULT_BLOCK_SIZE,
        inode_size: int = DEFAULT_INODE_SIZE,
        inodes_per_group: int = DEFAULT_INODES_PER_GROUP,
    ):
        self.inode_tables = dict(inode_tables)
        self.block_size = block_size
        self.inode_size = inode_size
        self.inodes_per_group = inodes_per_group

    def __repr__(self) -> str:
        return (
            f"<FilesystemLayout groups={len(self.inode_tables)} block_size={self.block_size} "
            f"inode_size={self.inode_size} inodes_per_group={self.inodes_per_group}>"
        )

    @classmethod
    def from_stats(cls, text: str) -> FilesystemLayout:
        """Build the layout from the output of the debugfs ``stats`` command."""
        if STATS_BANNER not in text:
            raise ProtocolError(f"Unexpected response from debugfs stats: {text!r}")

        block_size = _find_int(BLOCK_SIZE_RE, text, DEFAULT_BLOCK_SIZE)
        inode_size = _find_int(INODE_SIZE_RE, text, DEFAULT_INODE_SIZE)
        inodes_per_group = _find_int(INODES_PER_GROUP_RE, text, DEFAULT_INODES_PER_GROUP)

        inode_tables = {int(group): int(block) * block_size for group, block in GROUP_RE.findall(text)}
        if not inode_tables:
            raise ProtocolError("No block groups found in debugfs stats")

        layout = cls(inode_tables, block_size, inode_size, inodes_per_group)
        log.info("Parsed filesystem layout: %r", layout)
        return layout

    def inode_address(self, inum: int) -> int:
        """Return the byte offset of the on-disk record of inode ``inum``."""
        group, index = divmod(inum - 1, self.inodes_per_group)

        table = self.inode_tables.get(group)
        if table is None:
            raise LayoutError(f"Group {group} was calculated for inode {inum} but doesn't exist")

        return table + (index * self.inode_size)

    def inode_is_safe(self, inum: int, index: BadRegionIndex) -> bool:
        address = self.inode_address(inum)
        return index.range_is_safe(address, address + self.inode_size)


def _find_int(regex: re.Pattern, text: str, default: int) -> int:
    if match := regex.search(text):
        return int(match.group(1))

    log.warning("%s not found in debugfs stats, assuming %d", regex.pattern, default)
    return default
