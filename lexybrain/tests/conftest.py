from __future__ import annotations

import pytest

from lexybrain.apps.api import rate_limit
from lexybrain.apps.api.deps import reset_service_state
from lexybrain.core.config import get_settings


@pytest.fixture(autouse=True)
def reset_cached_state() -> None:
    # Settings and service singletons are cached per process; isolate env overrides per test.
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
    reset_service_state()
    yield
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
    reset_service_state()
