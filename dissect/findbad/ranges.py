from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, NamedTuple, TextIO

from dissect.findbad.exceptions import Error

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_FINDBAD", "CRITICAL"))

# ddrescue block status characters, see the "Mapfile structure" chapter of the GNU ddrescue manual
DDRESCUE_BAD_SECTOR = "-"
DDRESCUE_STATUSES = "?*/-+"


class BadRange(NamedTuple):
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length

    def __repr__(self) -> str:
        return f"<BadRange 0x{self.start:x}+0x{self.length:x}>"


# The damaged regions of the disk this tool was first written for
DEFAULT_BAD_RANGES = (
    BadRange(0x23BAD54000, 0x294000),
    BadRange(0x23EF054000, 0x294000),
    BadRange(0x23EF654000, 0x294000),
    BadRange(0x23FEADC000, 0x294000),
    BadRange(0x241F9DC000, 0x1539973E00),
    BadRange(0x398DA03000, 0x0A00),
)


class BadRegionIndex:
    """Set of damaged byte ranges of a device.

    The ranges are kept as given, unsorted and unmerged. Every query is a linear scan, the number of ranges
    coming out of a recovery log is small enough for that.
    """

    def __init__(self, ranges: Iterable[BadRange | tuple[int, int]] = ()):
        self.ranges = tuple(BadRange(*r) for r in ranges)

    def __repr__(self) -> str:
        return f"<BadRegionIndex ranges={len(self.ranges)}>"

    def __len__(self) -> int:
        return len(self.ranges)

    def __iter__(self) -> Iterator[BadRange]:
        return iter(self.ranges)

    def overlaps(self, start: int, end: int) -> bool:
        """Return whether the half-open interval ``[start, end)`` touches any bad range."""
        return any(end > r.start and start < r.end for r in self.ranges)

    def range_is_safe(self, start: int, end: int) -> bool:
        return not self.overlaps(start, end)

    def block_is_safe(self, block: int, block_size: int) -> bool:
        return not self.overlaps(block * block_size, (block + 1) * block_size)

    def blocks_are_safe(self, block: int, count: int, block_size: int) -> bool:
        return not self.overlaps(block * block_size, (block + count) * block_size)

    @classmethod
    def from_mapfile(cls, fh: TextIO, statuses: str = DDRESCUE_BAD_SECTOR) -> BadRegionIndex:
        return cls(read_mapfile(fh, statuses))


def parse_range(value: str) -> BadRange:
    """Parse a ``START:LENGTH`` pair, either number may be decimal or ``0x`` prefixed hexadecimal."""
    start, sep, length = value.partition(":")
    if not sep:
        raise ValueError(f"Invalid range, expected START:LENGTH: {value!r}")

    start, length = int(start, 0), int(length, 0)
    if start < 0 or length <= 0:
        raise ValueError(f"Invalid range, START can't be negative and LENGTH must be positive: {value!r}")

    return BadRange(start, length)


def read_mapfile(fh: TextIO, statuses: str = DDRESCUE_BAD_SECTOR) -> Iterator[BadRange]:
    """Read the blocks of a GNU ddrescue mapfile that have one of the given statuses.

    A mapfile consists of comment lines, one status line (``current_pos current_status [current_pass]``)
    and then one ``pos size status`` line per block.
    """
    for status in statuses:
        if status not in DDRESCUE_STATUSES:
            raise ValueError(f"Unknown ddrescue block status: {status!r}")

    seen_status_line = False
    for line_num, line in enumerate(fh, 1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue

        if not seen_status_line:
            seen_status_line = True
            continue

        fields = line.split()
        if len(fields) < 3 or fields[2] not in DDRESCUE_STATUSES:
            raise Error(f"Invalid ddrescue mapfile line {line_num}: {line!r}")

        pos, size, status = int(fields[0], 0), int(fields[1], 0), fields[2]
        if status in statuses and size > 0:
            log.debug("Bad region from mapfile line %d: 0x%x+0x%x (%s)", line_num, pos, size, status)
            yield BadRange(pos, size)
