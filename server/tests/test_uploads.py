from __future__ import annotations

import io

import pytest

from featherpanel.services.uploads import UploadTooLarge, read_limited


def test_stream_read_stops_past_the_limit():
    stream = io.BytesIO(b"x" * 1000)
    with pytest.raises(UploadTooLarge) as excinfo:
        read_limited(stream, 10)
    assert excinfo.value.limit == 10
    assert stream.tell() == 11


def test_content_within_limit_is_returned():
    assert read_limited(io.BytesIO(b"0123456789"), 10) == b"0123456789"
    assert read_limited(b"abc", 3) == b"abc"
    assert read_limited(None, 3) is None
    with pytest.raises(UploadTooLarge):
        read_limited(b"abcd", 3)
