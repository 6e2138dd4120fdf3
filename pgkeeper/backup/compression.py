"""
Streaming gzip compression for database dumps.

Both directions work chunk by chunk so memory use does not depend on the
dump size. The output is a standard single-member gzip file, readable by
`gunzip`.
"""

import os
import zlib
from typing import Iterable, Iterator

from .artifacts import BackupError


CHUNK_SIZE = 1024 * 1024  # 1MB

# wbits 16 + MAX_WBITS selects the gzip container instead of raw zlib
_GZIP_WBITS = 16 + zlib.MAX_WBITS


class CompressionFailed(BackupError):
    """Raised when compressing or decompressing a dump fails."""
    pass


def read_chunks(path: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield a file's content in fixed-size chunks."""
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield chunk


def compress_stream(chunks: Iterable[bytes], level: int = 6) -> Iterator[bytes]:
    """
    Gzip a stream of byte chunks.

    Args:
        chunks: Plain input chunks
        level: Compression level (0-9)

    Yields:
        Compressed chunks
    """
    if not 0 <= level <= 9:
        raise ValueError(f"Invalid compression level: {level}")

    compressor = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)

    for chunk in chunks:
        data = compressor.compress(chunk)
        if data:
            yield data

    yield compressor.flush()


def decompress_stream(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """
    Gunzip a stream of byte chunks.

    Raises:
        CompressionFailed: If the input is not gzip data or is truncated
    """
    decompressor = zlib.decompressobj(_GZIP_WBITS)

    try:
        for chunk in chunks:
            data = decompressor.decompress(chunk)
            if data:
                yield data

        tail = decompressor.flush()
        if tail:
            yield tail
    except zlib.error as e:
        raise CompressionFailed(f"Corrupt gzip data: {e}")

    if not decompressor.eof:
        raise CompressionFailed("Truncated gzip data: end of stream not reached")


def _write_stream(chunks: Iterable[bytes], output_path: str):
    try:
        with open(output_path, 'wb') as out:
            for chunk in chunks:
                out.write(chunk)
    except BaseException:
        # Never leave a partial file behind
        if os.path.exists(output_path):
            os.remove(output_path)
        raise


def compress_file(input_path: str, output_path: str, level: int = 6) -> str:
    """
    Compress a file with gzip.

    Args:
        input_path: Plain input file
        output_path: Destination (conventionally input_path + '.gz')
        level: Compression level (0-9)

    Returns:
        output_path

    Raises:
        CompressionFailed: If compression fails
    """
    try:
        _write_stream(compress_stream(read_chunks(input_path), level), output_path)
    except CompressionFailed:
        raise
    except Exception as e:
        raise CompressionFailed(f"Failed to compress {os.path.basename(input_path)}: {e}")

    return output_path


def decompress_file(input_path: str, output_path: str) -> str:
    """
    Decompress a gzip file.

    Returns:
        output_path

    Raises:
        CompressionFailed: If the input is corrupt or cannot be read
    """
    try:
        _write_stream(decompress_stream(read_chunks(input_path)), output_path)
    except CompressionFailed:
        raise
    except Exception as e:
        raise CompressionFailed(f"Failed to decompress {os.path.basename(input_path)}: {e}")

    return output_path
