"""SquashFS id table rewriting.

Squashfs images store owner and group ids as indices into a single id table.
For the namespace backends the rootfs must appear to be owned by the invoking
user, and there is no mount option that remaps ids. When the id table is
stored uncompressed it can be patched in place instead.

Superblock (squashfs 4.0, little endian, 96 bytes):
    0   magic               u32  'hsqs'
    26  id_count            u16
    28  version_major       u16
    30  version_minor       u16
    48  id_table_start      u64

The id table is an array of u64 pointers to metadata blocks. Each metadata
block starts with a u16 header whose top bit marks the block as uncompressed
and whose low 15 bits give the payload size; the payload is a run of u32 ids.
"""

import logging
import struct
from pathlib import Path

logger = logging.getLogger(__name__)

SQUASHFS_MAGIC = 0x73717368
SUPERBLOCK_SIZE = 96
METADATA_SIZE = 8192
METADATA_UNCOMPRESSED = 0x8000


class SquashfsError(Exception):
    """Raised when a squashfs image cannot be inspected or patched."""

    pass


def read_id_table(path: Path) -> list[int]:
    """Read every id stored in a squashfs image's id table.

    Raises:
        SquashfsError: If the image is not squashfs 4.0 or the table is compressed
    """
    with open(path, "rb") as f:
        return [value for _, value in _id_slots(f, path)]


def rewrite_squashfs_uids(path: Path, new_uid: int) -> int:
    """Rewrite every uid/gid in a squashfs image to new_uid.

    Args:
        path: Path to the .squashfs image (modified in place)
        new_uid: Id every owner and group should map to

    Returns:
        Number of id table entries rewritten

    Raises:
        SquashfsError: If the image is not squashfs 4.0 or its id table is
            compressed (compressed tables cannot be patched in place)
    """
    with open(path, "r+b") as f:
        slots = list(_id_slots(f, path))
        for offset, _ in slots:
            f.seek(offset)
            f.write(struct.pack("<I", new_uid))

    logger.info(f"Rewrote {len(slots)} ids in {path} to {new_uid}")
    return len(slots)


def _id_slots(f, path: Path):
    """Yield (file offset, id) for every entry in the id table."""
    f.seek(0)
    superblock = f.read(SUPERBLOCK_SIZE)
    if len(superblock) < SUPERBLOCK_SIZE:
        raise SquashfsError(f"{path} is too small to be a squashfs image")

    magic = struct.unpack_from("<I", superblock, 0)[0]
    if magic != SQUASHFS_MAGIC:
        raise SquashfsError(f"{path} is not a squashfs image (bad magic {magic:#x})")

    id_count = struct.unpack_from("<H", superblock, 26)[0]
    major, minor = struct.unpack_from("<HH", superblock, 28)
    if (major, minor) != (4, 0):
        raise SquashfsError(f"{path} is squashfs {major}.{minor}; only 4.0 is supported")

    id_table_start = struct.unpack_from("<Q", superblock, 48)[0]
    num_blocks = (id_count * 4 + METADATA_SIZE - 1) // METADATA_SIZE

    try:
        f.seek(id_table_start)
        pointers = struct.unpack(f"<{num_blocks}Q", f.read(8 * num_blocks))

        remaining = id_count
        for block_start in pointers:
            f.seek(block_start)
            header = struct.unpack("<H", f.read(2))[0]
            if not header & METADATA_UNCOMPRESSED:
                raise SquashfsError(
                    f"The id table of {path} is compressed; rebuild the image with "
                    + "'mksquashfs -noIdTableCompression' or use tarball shards"
                )
            size = header & ~METADATA_UNCOMPRESSED
            entries = min(size // 4, remaining)
            payload = f.read(entries * 4)
            for i in range(entries):
                yield block_start + 2 + 4 * i, struct.unpack_from("<I", payload, 4 * i)[0]
            remaining -= entries
    except struct.error as e:
        raise SquashfsError(f"{path} is truncated: its id table runs past the end of the file") from e
