"""Chunk planning for direct PUT and S3 multipart uploads.

All functions here are pure: the same inputs always give the same plan.
"""

from typing import Optional

from klbupload.upload.session import ChunkDescriptor, ChunkPlan

MIB = 1024 * 1024

S3_MIN_PART_SIZE = 5 * MIB
S3_MAX_PARTS = 10_000
S3_STREAMING_PART_SIZE = 512 * MIB
S3_MAX_OBJECT_SIZE = 5 * 1024 * 1024 * MIB


def _partition(size: int, chunk_size: int) -> tuple[ChunkDescriptor, ...]:
    """Split ``[0, size)`` into ``chunk_size`` pieces, last one truncated."""
    if size == 0:
        return (ChunkDescriptor(index=0, start_byte=0, end_byte=0, size_bytes=0),)

    chunks = []
    for index, start in enumerate(range(0, size, chunk_size)):
        end = min(start + chunk_size, size)
        chunks.append(ChunkDescriptor(index=index, start_byte=start, end_byte=end, size_bytes=end - start))
    return tuple(chunks)


def plan_direct_put(size: int, block_size: Optional[int] = None) -> ChunkPlan:
    """Plan a direct PUT upload.

    Without a block size, or when the file fits in one block, the whole file
    goes in a single chunk sent without Content-Range.

    Args:
        size: File size in bytes
        block_size: Server-imposed maximum chunk size, if any

    Returns:
        Chunk plan with every chunk no larger than ``block_size``
    """
    if size < 0:
        raise ValueError(f"size must be non-negative, got {size}")
    if block_size is not None and block_size <= 0:
        raise ValueError(f"block_size must be positive, got {block_size}")

    if block_size is None or size <= block_size:
        return ChunkPlan(method="put", total_size=size, chunk_size=size, chunks=_partition(size, max(size, 1)))

    return ChunkPlan(method="put", total_size=size, chunk_size=block_size, chunks=_partition(size, block_size))


def choose_part_size(
    size: Optional[int],
    min_part_size: int = S3_MIN_PART_SIZE,
    max_parts: int = S3_MAX_PARTS,
    streaming_part_size: int = S3_STREAMING_PART_SIZE,
) -> int:
    """Choose an S3 part size.

    Uses the minimum part size unless that would exceed ``max_parts``, in
    which case the size is raised to the next whole MiB that fits. When the
    size is unknown (streaming), a fixed large part size leaves headroom up
    to the S3 object size ceiling.
    """
    if size is None:
        return max(streaming_part_size, min_part_size)
    if size < 0:
        raise ValueError(f"size must be non-negative, got {size}")

    part_size = min_part_size
    if -(-size // part_size) > max_parts:
        part_size = -(-size // max_parts)
        part_size = -(-part_size // MIB) * MIB
    return part_size


def plan_s3_multipart(
    size: int,
    min_part_size: int = S3_MIN_PART_SIZE,
    max_parts: int = S3_MAX_PARTS,
    max_object_size: int = S3_MAX_OBJECT_SIZE,
    part_size: Optional[int] = None,
) -> ChunkPlan:
    """Plan an S3 multipart upload.

    Every part except possibly the last is at least ``min_part_size`` and
    the number of parts never exceeds ``max_parts``. An empty file yields a
    single zero-length part. A given ``part_size`` is checked against those limits.
    """
    if size < 0:
        raise ValueError(f"size must be non-negative, got {size}")
    if size > max_object_size:
        raise ValueError(f"size {size} exceeds the S3 object limit of {max_object_size} bytes")

    if part_size is None:
        part_size = choose_part_size(size, min_part_size=min_part_size, max_parts=max_parts)
    elif part_size < min_part_size or -(-size // part_size) > max_parts:
        raise ValueError(f"part_size {part_size} violates the S3 part limits for size {size}")
    return ChunkPlan(method="s3", total_size=size, chunk_size=part_size, chunks=_partition(size, part_size))
