from __future__ import annotations

import pytest

from episodes.conf import reload_settings_cache

from tests.factories import make_config


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    reload_settings_cache()
    yield
    reload_settings_cache()


@pytest.fixture
def config():
    return make_config()
