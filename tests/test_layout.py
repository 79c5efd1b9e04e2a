from __future__ import annotations

import pytest

from dissect.findbad.exceptions import LayoutError, ProtocolError
from dissect.findbad.layout import FilesystemLayout
from dissect.findbad.ranges import BadRegionIndex
from tests.conftest import INODE_TABLE_OFFSET, make_stats


def test_from_stats() -> None:
    layout = FilesystemLayout.from_stats(make_stats({0: 1057, 1: 1569, 2: 33825}, inodes_per_group=8192))

    assert layout.block_size == 4096
    assert layout.inode_size == 256
    assert layout.inodes_per_group == 8192
    assert layout.inode_tables == {0: 1057 * 4096, 1: 1569 * 4096, 2: 33825 * 4096}


def test_from_stats_block_size() -> None:
    layout = FilesystemLayout.from_stats(make_stats({0: 5}, block_size=1024))

    assert layout.block_size == 1024
    assert layout.inode_tables == {0: 5 * 1024}


def test_from_stats_defaults() -> None:
    text = "Filesystem features:      has_journal extent\n Group  0: block bitmap at 2, inode table at 10\n"
    layout = FilesystemLayout.from_stats(text)

    assert layout.block_size == 4096
    assert layout.inode_size == 256
    assert layout.inodes_per_group == 8028
    assert layout.inode_tables == {0: 10 * 4096}


def test_from_stats_unexpected_output() -> None:
    with pytest.raises(ProtocolError, match="Unexpected response"):
        FilesystemLayout.from_stats("stats: Filesystem not open\n")

    with pytest.raises(ProtocolError, match="No block groups"):
        FilesystemLayout.from_stats("Filesystem features:      extent\n")


def test_inode_address(layout: FilesystemLayout) -> None:
    assert layout.inode_address(1) == layout.inode_tables[0]
    assert layout.inode_address(2) == layout.inode_tables[0] + 256
    assert layout.inode_address(8028) == layout.inode_tables[0] + 8027 * 256
    assert layout.inode_address(8029) == layout.inode_tables[1]
    assert layout.inode_address(8030) == layout.inode_tables[1] + 256


def test_inode_address_missing_group(layout: FilesystemLayout) -> None:
    with pytest.raises(LayoutError, match="Group 2"):
        layout.inode_address(2 * 8028 + 1)


def test_inode_is_safe(layout: FilesystemLayout) -> None:
    index = BadRegionIndex([(INODE_TABLE_OFFSET + 12 * 256, 1)])

    assert layout.inode_is_safe(12, index)
    assert not layout.inode_is_safe(13, index)
    assert layout.inode_is_safe(14, index)
