"""Bounded reads of uploaded files."""

from __future__ import annotations

from typing import BinaryIO, Optional, Union

UploadSource = Union[bytes, BinaryIO]


class UploadTooLarge(ValueError):
    def __init__(self, limit: int):
        super().__init__(f"upload exceeds {limit} bytes")
        self.limit = limit


def read_limited(source: Optional[UploadSource], limit: int) -> Optional[bytes]:
    """Return the upload's content, reading at most ``limit + 1`` bytes from a stream."""

    if source is None:
        return None
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    else:
        data = source.read(limit + 1)
    if len(data) > limit:
        raise UploadTooLarge(limit)
    return data


__all__ = ["UploadSource", "UploadTooLarge", "read_limited"]
