"""Unit tests for volume_id module.

Tests the opaque volume identifier codec:
- Encoding filesystem, block and snapshot identifiers
- Decoding with the minimum separator counts
- Snapshot timestamp extraction
- Malformed input
"""

import pytest

from azfilevol.errors import ErrorKind, VolumeIdFormatError
from azfilevol.modules.volume_id import (
    VolumeIdentifier,
    decode_snapshot,
    decode_volume_id,
    encode_volume_id,
)

SNAPSHOT = "2019-08-22T07:17:53.0000000Z"


class TestEncodeVolumeId:
    """Test building identifier strings."""

    def test_filesystem_volume(self):
        """Two separators for a share without a disk."""
        assert encode_volume_id("rg", "acct", "share") == "rg#acct#share"

    def test_block_volume(self):
        """Disk name is the fourth field."""
        assert encode_volume_id("rg", "acct", "share", "share.vhd") == "rg#acct#share#share.vhd"

    def test_snapshot_of_block_volume(self):
        assert (
            encode_volume_id("rg", "acct", "share", "share.vhd", SNAPSHOT)
            == f"rg#acct#share#share.vhd#{SNAPSHOT}"
        )

    def test_snapshot_of_filesystem_volume_keeps_empty_disk_field(self):
        """Snapshot timestamp always lands in the fifth field."""
        assert encode_volume_id("rg", "acct", "share", "", SNAPSHOT) == f"rg#acct#share##{SNAPSHOT}"


class TestDecodeVolumeId:
    """Test parsing identifier strings."""

    def test_two_separators(self):
        volume = decode_volume_id("rg#acct#share")
        assert volume == VolumeIdentifier("rg", "acct", "share")
        assert volume.disk_name == ""
        assert not volume.is_block_volume

    def test_three_separators(self):
        volume = decode_volume_id("rg#acct#share#disk.vhd")
        assert volume.disk_name == "disk.vhd"
        assert volume.is_block_volume
        assert not volume.is_snapshot

    def test_four_separators_carries_snapshot(self):
        volume = decode_volume_id(f"rg#acct#share#disk.vhd#{SNAPSHOT}")
        assert volume.disk_name == "disk.vhd"
        assert volume.snapshot_timestamp == SNAPSHOT
        assert volume.is_snapshot

    def test_extra_separators_never_extend_disk_name(self):
        """Fields beyond the fourth are trailing metadata."""
        volume = decode_volume_id("rg#acct#share#disk.vhd#meta#more")
        assert volume.disk_name == "disk.vhd"
        assert volume.snapshot_timestamp == "more"

    def test_empty_fields_are_preserved(self):
        volume = decode_volume_id("##share")
        assert volume.resource_group == ""
        assert volume.account_name == ""
        assert volume.share_name == "share"

    @pytest.mark.parametrize("volume_id", ["", "rg", "rg#acct", "#", None])
    def test_fewer_than_two_separators_raises_format_error(self, volume_id):
        """Malformed identifiers fail with FORMAT, never another exception type."""
        with pytest.raises(VolumeIdFormatError, match="should at least contain two #") as exc_info:
            decode_volume_id(volume_id)
        assert exc_info.value.kind is ErrorKind.FORMAT

    def test_error_context_carries_identifier(self):
        with pytest.raises(VolumeIdFormatError) as exc_info:
            decode_volume_id("rg#acct")
        assert exc_info.value.context == {"volume_id": "rg#acct"}

    @pytest.mark.parametrize(
        "volume_id",
        [
            "rg#acct#share",
            "rg#acct#share#share.vhd",
            f"rg#acct#share#share.vhd#{SNAPSHOT}",
            f"rg#acct#share##{SNAPSHOT}",
        ],
    )
    def test_well_formed_identifiers_survive_decode_then_encode(self, volume_id):
        assert decode_volume_id(volume_id).encode() == volume_id


class TestVolumeIdentifier:
    """Test VolumeIdentifier helpers."""

    def test_without_snapshot(self):
        snapshot = VolumeIdentifier("rg", "acct", "share", "disk.vhd", SNAPSHOT)
        assert snapshot.without_snapshot().encode() == "rg#acct#share#disk.vhd"

    def test_str_is_encoded_form(self):
        assert str(VolumeIdentifier("rg", "acct", "share")) == "rg#acct#share"

    def test_is_immutable(self):
        volume = VolumeIdentifier("rg", "acct", "share")
        with pytest.raises(AttributeError):
            volume.share_name = "other"  # type: ignore[misc]


class TestDecodeSnapshot:
    """Test snapshot timestamp extraction."""

    def test_returns_last_field(self):
        assert decode_snapshot(f"rg#f123#vol#disk#{SNAPSHOT}") == SNAPSHOT

    def test_returns_last_field_with_extra_separators(self):
        assert decode_snapshot(f"rg#acct#share#disk#meta#{SNAPSHOT}") == SNAPSHOT

    @pytest.mark.parametrize("volume_id", ["", "rg#acct#share", "rg#acct#share#disk.vhd"])
    def test_fewer_than_four_separators_raises_format_error(self, volume_id):
        with pytest.raises(VolumeIdFormatError, match="should at least contain four #"):
            decode_snapshot(volume_id)
