"""Fixed VHD footer codec.

A fixed VHD is raw disk data followed by a 512-byte footer. Writing the
footer makes the backing file a valid VHD that Azure and Hyper-V tooling
can open, while Linux only ever sees the data region: the loop device is
bound with a size limit equal to the footer's current size.

All multi-byte fields are big-endian.
"""

import struct
import time
import uuid
from dataclasses import dataclass, field

FOOTER_SIZE = 512
SECTOR_SIZE = 512

COOKIE = b"conectix"
FEATURES_RESERVED = 0x00000002
FILE_FORMAT_VERSION = 0x00010000
FIXED_DATA_OFFSET = 0xFFFFFFFFFFFFFFFF
DISK_TYPE_FIXED = 2
CREATOR_APPLICATION = b"azfv"
CREATOR_VERSION = 0x00010000
CREATOR_HOST_OS = b"Wi2k"

# Seconds between the Unix epoch and 2000-01-01T00:00:00Z
VHD_EPOCH_OFFSET = 946684800

_FOOTER_STRUCT = struct.Struct(">8sIIQI4sI4sQQHBBII16sB427x")
_CHECKSUM_OFFSET = 64


class VhdFooterError(ValueError):
    """Footer bytes are not a valid fixed VHD footer."""

    pass


@dataclass(frozen=True)
class DiskGeometry:
    cylinders: int
    heads: int
    sectors_per_track: int


@dataclass(frozen=True)
class VhdFooter:
    """Decoded fixed VHD footer."""

    current_size: int
    original_size: int = -1
    timestamp: int = -1
    unique_id: bytes = field(default_factory=lambda: uuid.uuid4().bytes)
    creator_application: bytes = CREATOR_APPLICATION
    creator_version: int = CREATOR_VERSION
    creator_host_os: bytes = CREATOR_HOST_OS
    disk_type: int = DISK_TYPE_FIXED

    def __post_init__(self) -> None:
        if self.current_size <= 0 or self.current_size % SECTOR_SIZE:
            raise VhdFooterError(
                f"VHD size must be a positive multiple of {SECTOR_SIZE}, got {self.current_size}"
            )
        if self.original_size < 0:
            object.__setattr__(self, "original_size", self.current_size)
        if self.timestamp < 0:
            object.__setattr__(self, "timestamp", int(time.time()) - VHD_EPOCH_OFFSET)

    @property
    def geometry(self) -> DiskGeometry:
        return chs_geometry(self.current_size)

    def to_bytes(self) -> bytes:
        geometry = self.geometry
        values = [
            COOKIE,
            FEATURES_RESERVED,
            FILE_FORMAT_VERSION,
            FIXED_DATA_OFFSET,
            self.timestamp & 0xFFFFFFFF,
            self.creator_application,
            self.creator_version,
            self.creator_host_os,
            self.original_size,
            self.current_size,
            geometry.cylinders,
            geometry.heads,
            geometry.sectors_per_track,
            self.disk_type,
            0,
            self.unique_id,
            0,
        ]
        unsigned = _FOOTER_STRUCT.pack(*values)
        values[14] = footer_checksum(unsigned)
        return _FOOTER_STRUCT.pack(*values)


def build_fixed_footer(size_bytes: int) -> bytes:
    """Build a footer for a fixed VHD whose data region is size_bytes long."""
    return VhdFooter(current_size=size_bytes).to_bytes()


def parse_footer(data: bytes) -> VhdFooter:
    """Decode and validate a fixed VHD footer.

    Raises:
        VhdFooterError: On short input, wrong cookie or checksum mismatch
    """
    if len(data) != FOOTER_SIZE:
        raise VhdFooterError(f"VHD footer must be {FOOTER_SIZE} bytes, got {len(data)}")

    (
        cookie,
        _features,
        _version,
        _data_offset,
        timestamp,
        creator_application,
        creator_version,
        creator_host_os,
        original_size,
        current_size,
        _cylinders,
        _heads,
        _sectors,
        disk_type,
        checksum,
        unique_id,
        _saved_state,
    ) = _FOOTER_STRUCT.unpack(data)

    if cookie != COOKIE:
        raise VhdFooterError(f"Bad VHD cookie: {cookie!r}")
    if checksum != footer_checksum(data):
        raise VhdFooterError("VHD footer checksum mismatch")

    return VhdFooter(
        current_size=current_size,
        original_size=original_size,
        timestamp=timestamp,
        unique_id=unique_id,
        creator_application=creator_application,
        creator_version=creator_version,
        creator_host_os=creator_host_os,
        disk_type=disk_type,
    )


def footer_checksum(data: bytes) -> int:
    """Ones' complement of the byte sum, skipping the checksum field."""
    total = sum(data[:_CHECKSUM_OFFSET]) + sum(data[_CHECKSUM_OFFSET + 4 :])
    return ~total & 0xFFFFFFFF


def chs_geometry(size_bytes: int) -> DiskGeometry:
    """Compute cylinder/head/sector geometry per the VHD specification."""
    total_sectors = min(size_bytes // SECTOR_SIZE, 65535 * 16 * 255)

    if total_sectors >= 65535 * 16 * 63:
        sectors_per_track = 255
        heads = 16
        cylinder_times_heads = total_sectors // sectors_per_track
    else:
        sectors_per_track = 17
        cylinder_times_heads = total_sectors // sectors_per_track
        heads = max((cylinder_times_heads + 1023) // 1024, 4)

        if cylinder_times_heads >= heads * 1024 or heads > 16:
            sectors_per_track = 31
            heads = 16
            cylinder_times_heads = total_sectors // sectors_per_track

        if cylinder_times_heads >= heads * 1024:
            sectors_per_track = 63
            heads = 16
            cylinder_times_heads = total_sectors // sectors_per_track

    return DiskGeometry(
        cylinders=min(cylinder_times_heads // heads, 0xFFFF),
        heads=heads,
        sectors_per_track=sectors_per_track,
    )


__all__ = [
    "FOOTER_SIZE",
    "DiskGeometry",
    "VhdFooter",
    "VhdFooterError",
    "build_fixed_footer",
    "chs_geometry",
    "footer_checksum",
    "parse_footer",
]
