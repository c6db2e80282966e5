from __future__ import annotations

from pathlib import Path

import pytest
from mutagen import MutagenError
from mutagen.id3 import ID3, ID3NoHeaderError

from mediastore.schemas import TagSet
from mediastore.tagging import TagEmbedder

URL_TEMPLATE = "https://example.test/profile/{artist_id}?playlist={playlist_id}&album={album_id}&music={music_id}"


def _embedder() -> TagEmbedder:
    return TagEmbedder(url_template=URL_TEMPLATE, id3_version=4)


def test_embed_without_tags_is_noop(make_mp3) -> None:
    path = make_mp3()
    original = path.read_bytes()
    assert _embedder().embed(path, None) is False
    assert _embedder().embed(path, TagSet()) is False
    assert path.read_bytes() == original


def test_embed_writes_fresh_tag_block(make_mp3) -> None:
    path = make_mp3()
    tags = TagSet.model_validate(
        {
            "title": "T",
            "artist": "Art",
            "album": "Alb",
            "comment": "C",
            "artistId": "a1",
            "musicId": "m2",
        }
    )

    assert _embedder().embed(path, tags) is True

    id3 = ID3(str(path))
    assert id3.getall("TIT2")[0].text == ["T"]
    assert id3.getall("TPE1")[0].text == ["Art"]
    assert id3.getall("TALB")[0].text == ["Alb"]
    assert id3.getall("COMM")[0].text == ["C"]
    assert id3.getall("WXXX")[0].url == (
        "https://example.test/profile/a1?playlist=&album=&music=m2"
    )
    assert not path.with_name(path.name + ".tmp").exists()


def test_embed_replaces_previous_tags(make_mp3) -> None:
    path = make_mp3()
    _embedder().embed(path, TagSet(title="old", album="Old Album"))
    _embedder().embed(path, TagSet(title="new"))

    id3 = ID3(str(path))
    assert id3.getall("TIT2")[0].text == ["new"]
    assert id3.getall("TALB") == []


def test_embed_skips_unparseable_file(make_blob) -> None:
    path = make_blob()
    original = path.read_bytes()

    assert _embedder().embed(path, TagSet(title="T")) is False

    assert path.read_bytes() == original
    assert not path.with_name(path.name + ".tmp").exists()
    with pytest.raises(ID3NoHeaderError):
        ID3(str(path))


def test_embed_skips_missing_file(staging_dir: Path) -> None:
    assert _embedder().embed(staging_dir / "gone.mp3", TagSet(title="T")) is False


def test_save_failure_leaves_original_untouched(
    make_mp3, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = make_mp3()
    original = path.read_bytes()

    def _fail_save(self, *args, **kwargs):
        raise MutagenError("disk full")

    monkeypatch.setattr(ID3, "save", _fail_save)

    assert _embedder().embed(path, TagSet(title="T")) is False
    assert path.read_bytes() == original
    assert not path.with_name(path.name + ".tmp").exists()


def test_id3_v23_output(make_mp3) -> None:
    path = make_mp3()
    embedder = TagEmbedder(url_template=URL_TEMPLATE, id3_version=3)
    assert embedder.embed(path, TagSet(title="T")) is True
    assert ID3(str(path)).version[:2] == (2, 3)
