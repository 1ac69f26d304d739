"""Opaque volume identifier codec.

A volume id is the single piece of state handed back to the orchestrator.
It carries everything needed to locate and mount a volume:

    <resource-group>#<account>#<share>                  filesystem volume
    <resource-group>#<account>#<share>#<disk>           VHD block volume
    <resource-group>#<account>#<share>#<disk>#<ts>      share snapshot

Philosophy:
- Pure functions: no network, no filesystem
- Strict about the minimum, lenient about trailing metadata
- Round-trip stable: encode(decode(x)) == x for well-formed ids

Public API:
    VolumeIdentifier: Decoded identifier (immutable)
    encode_volume_id: Build an identifier string
    decode_volume_id: Parse an identifier string
    decode_snapshot: Extract the snapshot timestamp from an identifier
"""

from dataclasses import dataclass

from azfilevol.errors import VolumeIdFormatError

SEPARATOR = "#"

# Minimum separator counts
MIN_VOLUME_SEPARATORS = 2
MIN_SNAPSHOT_SEPARATORS = 4


@dataclass(frozen=True)
class VolumeIdentifier:
    """Decoded volume identifier."""

    resource_group: str
    account_name: str
    share_name: str
    disk_name: str = ""
    snapshot_timestamp: str = ""

    @property
    def is_block_volume(self) -> bool:
        """True if the volume is a VHD file inside the share."""
        return bool(self.disk_name)

    @property
    def is_snapshot(self) -> bool:
        return bool(self.snapshot_timestamp)

    def encode(self) -> str:
        return encode_volume_id(
            self.resource_group,
            self.account_name,
            self.share_name,
            self.disk_name,
            self.snapshot_timestamp,
        )

    def without_snapshot(self) -> "VolumeIdentifier":
        """Identifier of the volume a snapshot was taken from."""
        return VolumeIdentifier(
            self.resource_group, self.account_name, self.share_name, self.disk_name
        )

    def __str__(self) -> str:
        return self.encode()


def encode_volume_id(
    resource_group: str,
    account_name: str,
    share_name: str,
    disk_name: str = "",
    snapshot_timestamp: str = "",
) -> str:
    """Build a volume identifier string.

    The disk field is emitted when a disk name or a snapshot timestamp is
    present, so a snapshot of a filesystem volume keeps its fixed position:
    "rg#acct#share##<ts>".

    Examples:
        >>> encode_volume_id("rg", "acct", "share")
        'rg#acct#share'
        >>> encode_volume_id("rg", "acct", "share", "share.vhd")
        'rg#acct#share#share.vhd'
    """
    fields = [resource_group, account_name, share_name]
    if disk_name or snapshot_timestamp:
        fields.append(disk_name)
    if snapshot_timestamp:
        fields.append(snapshot_timestamp)
    return SEPARATOR.join(fields)


def decode_volume_id(volume_id: str) -> VolumeIdentifier:
    """Parse a volume identifier string.

    Separators beyond the third belong to trailing metadata and never extend
    the disk name. With four or more separators the final field is kept as
    the snapshot timestamp.

    Args:
        volume_id: Identifier produced by encode_volume_id

    Returns:
        VolumeIdentifier

    Raises:
        VolumeIdFormatError: If fewer than two separators are present

    Examples:
        >>> decode_volume_id("rg#acct#share#disk.vhd").disk_name
        'disk.vhd'
    """
    segments = _split(volume_id)
    if len(segments) < MIN_VOLUME_SEPARATORS + 1:
        raise VolumeIdFormatError(
            f'error parsing volume id: "{volume_id}", should at least contain two {SEPARATOR}',
            {"volume_id": volume_id},
        )

    disk_name = segments[3] if len(segments) > 3 else ""
    snapshot = segments[-1] if len(segments) > MIN_SNAPSHOT_SEPARATORS else ""
    return VolumeIdentifier(
        resource_group=segments[0],
        account_name=segments[1],
        share_name=segments[2],
        disk_name=disk_name,
        snapshot_timestamp=snapshot,
    )


def decode_snapshot(volume_id: str) -> str:
    """Extract the snapshot timestamp from a snapshot identifier.

    Raises:
        VolumeIdFormatError: If fewer than four separators are present

    Examples:
        >>> decode_snapshot("rg#f123#vol#disk#2019-08-22T07:17:53.0000000Z")
        '2019-08-22T07:17:53.0000000Z'
    """
    segments = _split(volume_id)
    if len(segments) < MIN_SNAPSHOT_SEPARATORS + 1:
        raise VolumeIdFormatError(
            f'error parsing volume id: "{volume_id}", should at least contain four {SEPARATOR}',
            {"volume_id": volume_id},
        )
    return segments[-1]


def _split(volume_id: str | None) -> list[str]:
    if not volume_id:
        return [""]
    return volume_id.split(SEPARATOR)


__all__ = [
    "SEPARATOR",
    "VolumeIdentifier",
    "decode_snapshot",
    "decode_volume_id",
    "encode_volume_id",
]
