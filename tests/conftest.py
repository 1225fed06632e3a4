from pathlib import Path

import pytest

from fakes import FakeSession
from generate_manifest import Config


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(source_file=tmp_path / "plugins.json", output_file=tmp_path / "manifest.json")


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()
