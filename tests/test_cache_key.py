import pytest

from mediarelay.models.media import CacheEntry, CacheKey, MediaKind, SourceKind, SourceRef
from mediarelay.utils.exceptions import InvalidSourceRefError


def test_cache_key_string_form() -> None:
    key = CacheKey(SourceRef(SourceKind.YOUTUBE, "dQw4w9WgXcQ"), MediaKind.AUDIO, "128")

    assert str(key) == "yt:dQw4w9WgXcQ:audio:128"
    assert CacheKey.parse(str(key)) == key


def test_cache_key_parse_keeps_colons_in_quality() -> None:
    key = CacheKey.parse("spotify:abc:audio:weird:quality")

    assert key.source == SourceRef(SourceKind.TRACK, "abc")
    assert key.quality == "weird:quality"


def test_same_request_builds_equal_keys() -> None:
    first = CacheKey(SourceRef(SourceKind.CLIP, "123"), MediaKind.parse("mp4"), "720p")
    second = CacheKey(SourceRef(SourceKind.CLIP, "123"), MediaKind.VIDEO, "720p")

    assert first == second
    assert hash(first) == hash(second)


@pytest.mark.parametrize("text", ["", "yt:abc", "xx:abc:audio:128", "yt::audio:128", "yt:abc:gif:1"])
def test_malformed_cache_keys_raise(text) -> None:
    with pytest.raises(InvalidSourceRefError):
        CacheKey.parse(text)


def test_cache_entry_accepts_bare_handle_values() -> None:
    entry = CacheEntry.from_dict("yt:abc:audio:128", "media/yt/abc.m4a")

    assert entry.handle == "media/yt/abc.m4a"
    assert entry.inserted_at == 0.0
