from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from mediastore.content_index import DirectFilesystemStore, IndexedContentStore

ROOT_DIR = Path(__file__).resolve().parents[1]
TEST_VOLUMES = ["external_primary", "sdcard1"]
# MPEG-1 Layer III, 128 kbps, 44.1 kHz, joint stereo: 417 byte frames.
MP3_FRAME = b"\xff\xfb\x90\x64" + b"\x00" * 413


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'media_index.db'}"


@pytest.fixture()
def engine(database_url: str, monkeypatch: pytest.MonkeyPatch) -> Iterator[Engine]:
    monkeypatch.setenv("DATABASE_URL", database_url)
    config = Config(str(ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT_DIR / "alembic"))
    command.upgrade(config, "head")
    engine = create_engine(database_url)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine: Engine, tmp_path: Path) -> IndexedContentStore:
    return IndexedContentStore(
        engine=engine,
        root_dir=str(tmp_path / "store"),
        volumes=TEST_VOLUMES,
    )


@pytest.fixture()
def direct_store(tmp_path: Path) -> DirectFilesystemStore:
    return DirectFilesystemStore(
        root_dir=str(tmp_path / "direct"),
        volumes=TEST_VOLUMES,
    )


@pytest.fixture()
def staging_dir(tmp_path: Path) -> Path:
    path = tmp_path / "stage"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture()
def make_mp3(staging_dir: Path) -> Callable[..., Path]:
    def _make(name: str = "a.mp3", frames: int = 32) -> Path:
        path = staging_dir / name
        path.write_bytes(MP3_FRAME * frames)
        return path

    return _make


@pytest.fixture()
def make_blob(staging_dir: Path) -> Callable[..., Path]:
    def _make(name: str = "notes.bin", content: bytes = b"not an mpeg stream") -> Path:
        path = staging_dir / name
        path.write_bytes(content)
        return path

    return _make
