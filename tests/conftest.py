"""
Shared fixtures for Habit Coach unit tests.
"""
import random
import pytest
from unittest.mock import MagicMock, AsyncMock


# ---------------------------------------------------------------------------
# Minimal Home Assistant mock
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_hass(tmp_path):
    hass = MagicMock()
    hass.states = MagicMock()
    hass.states.get = MagicMock(return_value=None)
    hass.services = MagicMock()
    hass.services.async_call = AsyncMock()
    hass.config.path = lambda x: str(tmp_path / x)
    hass.config.latitude = 38.7223
    hass.config.longitude = -9.1393

    # Mock async executor job - execute function directly in async wrapper
    async def async_executor_job(func, *args):
        return func(*args)
    hass.async_add_executor_job = async_executor_job
    return hass


# ---------------------------------------------------------------------------
# Storage mock
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_storage():
    storage = AsyncMock()
    storage.load_state = AsyncMock(return_value={})
    storage.save_state = AsyncMock()
    storage.update_state_field = AsyncMock()
    storage.append_state_list = AsyncMock()
    storage.get_habit = AsyncMock(return_value=None)
    storage.get_completions = AsyncMock(return_value=[])
    return storage


@pytest.fixture
def rng():
    """Seeded random source so stochastic components are reproducible."""
    return random.Random(42)

