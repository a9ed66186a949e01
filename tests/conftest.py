import pytest

from withholdings.db import make_session_factory


@pytest.fixture
def session_factory(tmp_path):
    return make_session_factory(f"sqlite:///{tmp_path / 'withholdings.db'}")
