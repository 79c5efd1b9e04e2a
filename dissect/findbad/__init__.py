from dissect.findbad.debugfs import DebugfsSession
from dissect.findbad.exceptions import (
    Error,
    LayoutError,
    ProtocolError,
    SessionClosedError,
    SessionDisposedError,
)
from dissect.findbad.findbad import DamageReport, FileType, FindBad, Inode
from dissect.findbad.layout import FilesystemLayout
from dissect.findbad.ranges import BadRange, BadRegionIndex

__all__ = [
    "BadRange",
    "BadRegionIndex",
    "DamageReport",
    "DebugfsSession",
    "Error",
    "FileType",
    "FilesystemLayout",
    "FindBad",
    "Inode",
    "LayoutError",
    "ProtocolError",
    "SessionClosedError",
    "SessionDisposedError",
]
