from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TextIO

from dissect.findbad.debugfs import DebugfsSession
from dissect.findbad.exceptions import Error
from dissect.findbad.findbad import DEFAULT_MAX_DEPTH, FindBad
from dissect.findbad.ranges import (
    DDRESCUE_BAD_SECTOR,
    DEFAULT_BAD_RANGES,
    BadRange,
    BadRegionIndex,
    parse_range,
    read_mapfile,
)

log = logging.getLogger(__name__)


async def find_bad(
    device: Path,
    index: BadRegionIndex,
    out: TextIO,
    as_json: bool = False,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> int:
    """Walk the filesystem on ``device`` and write a line to ``out`` for every damaged path.

    Returns the number of damaged paths.
    """
    count = 0
    async with await DebugfsSession.open(device) as session:
        fb = await FindBad.open(session, index, max_depth=max_depth)
        async for report in fb.walk():
            out.write((json.dumps(report.to_dict()) if as_json else str(report)) + "\n")
            out.flush()
            count += 1
    return count


def load_index(ranges: list[BadRange], mapfile: Path | None, statuses: str) -> BadRegionIndex:
    ranges = list(ranges)
    if mapfile:
        with mapfile.open("rt") as fh:
            ranges.extend(read_mapfile(fh, statuses))

    if not ranges and not mapfile:
        log.warning("No bad ranges given, using the built-in set")
        ranges = list(DEFAULT_BAD_RANGES)

    return BadRegionIndex(ranges)


def set_log_level(level: int) -> None:
    for name in list(logging.root.manager.loggerDict):
        if name == "dissect.findbad" or name.startswith("dissect.findbad."):
            logging.getLogger(name).setLevel(level)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Find the files on an ext2/3/4 filesystem that overlap damaged regions of the device.",
    )
    parser.add_argument("device", type=Path, help="block device or filesystem image")
    parser.add_argument(
        "-r",
        "--range",
        dest="ranges",
        metavar="START:LENGTH",
        action="append",
        type=parse_range,
        default=[],
        help="damaged byte range, decimal or 0x prefixed hexadecimal (can be given multiple times)",
    )
    parser.add_argument("-m", "--mapfile", type=Path, help="GNU ddrescue mapfile to read damaged ranges from")
    parser.add_argument(
        "-s",
        "--status",
        default=DDRESCUE_BAD_SECTOR,
        help="mapfile block statuses that count as damaged (default: %(default)s)",
    )
    parser.add_argument("--json", action="store_true", help="output one JSON object per damaged path")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="maximum directory depth")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="increase log verbosity")
    args = parser.parse_args()

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    if args.verbose:
        set_log_level(logging.DEBUG if args.verbose > 1 else logging.INFO)

    try:
        args.device.stat()
        index = load_index(args.ranges, args.mapfile, args.status)
        log.info("Reading %s with %d bad range(s)", args.device, len(index))
        count = asyncio.run(find_bad(args.device, index, sys.stdout, args.json, args.max_depth))
    except (Error, OSError, ValueError) as e:
        log.error("%s", e)
        log.debug("Walking %s failed", args.device, exc_info=e)
        return 1

    log.info("Found %d damaged path(s)", count)
    return 0


if __name__ == "__main__":
    sys.exit(main())
