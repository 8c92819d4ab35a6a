from pathlib import Path

import pytest

from fakes import build_service


@pytest.fixture
def make_service(tmp_path: Path):
    def _make(config_path: Path | None = None, **sync_overrides):
        return build_service(tmp_path, config_path=config_path, **sync_overrides)

    return _make
