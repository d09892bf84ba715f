"""
Tests for ab_testing.py

Covers:
- Architecture catalog
- First-run assignment and persistence across restarts
- Result recording and durable history
- Best variant selection
- Variant switching and validation
- Model version descriptions
"""
import random

import pytest
import pytest_asyncio

from custom_components.habit_coach.ab_testing import ABTestingManager, get_architecture
from custom_components.habit_coach.const import (
    KEY_MODEL_VARIANT,
    KEY_USER_GROUP,
    NETWORK_ARCHITECTURES,
)
from custom_components.habit_coach.errors import InvalidVariant
from custom_components.habit_coach.storage import StorageManager


@pytest_asyncio.fixture
async def storage(mock_hass):
    sm = StorageManager(mock_hass)
    await sm.setup()
    return sm


@pytest_asyncio.fixture
async def ab_testing(storage):
    manager = ABTestingManager(storage, random.Random(3))
    await manager.setup()
    return manager


# ─────────────────────────────────────────────────────────────────────────────
# Catalog
# ─────────────────────────────────────────────────────────────────────────────

class TestArchitectures:

    @pytest.mark.parametrize("variant,hidden", [
        ("control", [8]),
        ("small_network", [6]),
        ("large_network", [12]),
        ("deep_network", [8, 8]),
        ("wide_network", [16]),
    ])
    def test_catalog(self, variant, hidden):
        arch = get_architecture(variant)
        assert arch.input_size == 10
        assert arch.hidden_layers == hidden
        assert arch.output_size == 3
        assert arch.learning_rate == 0.01

    def test_architecture_is_a_copy(self):
        get_architecture("deep_network").hidden_layers.append(4)
        assert get_architecture("deep_network").hidden_layers == [8, 8]


# ─────────────────────────────────────────────────────────────────────────────
# Assignment
# ─────────────────────────────────────────────────────────────────────────────

class TestAssignment:

    @pytest.mark.asyncio
    async def test_first_run_assigns_and_persists(self, ab_testing, storage):
        assert ab_testing.user_group is not None
        assert ab_testing.current_variant in NETWORK_ARCHITECTURES

        state = await storage.load_state()
        assert state[KEY_USER_GROUP] == ab_testing.user_group
        assert state[KEY_MODEL_VARIANT] == ab_testing.current_variant

    @pytest.mark.asyncio
    async def test_assignment_is_stable_across_restarts(self, ab_testing, storage):
        restarted = ABTestingManager(storage, random.Random(99))
        await restarted.setup()

        assert restarted.user_group == ab_testing.user_group
        assert restarted.current_variant == ab_testing.current_variant

    @pytest.mark.asyncio
    async def test_assignment_keeps_existing_state(self, storage):
        await storage.save_state({"rl_agent": {"habit_id": "h1"}})

        manager = ABTestingManager(storage)
        await manager.setup()

        assert (await storage.load_state())["rl_agent"] == {"habit_id": "h1"}

    @pytest.mark.asyncio
    async def test_unknown_stored_variant_uses_control_architecture(self, storage):
        await storage.save_state({KEY_USER_GROUP: "g", KEY_MODEL_VARIANT: "retired_network"})

        manager = ABTestingManager(storage)
        await manager.setup()

        assert manager.current_variant == "retired_network"
        assert manager.get_current_architecture() == get_architecture("control")


# ─────────────────────────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────────────────────────

class TestResults:

    @pytest.mark.asyncio
    async def test_result_is_tagged_with_current_variant(self, ab_testing):
        result = await ab_testing.record_test_result(0.8, 0.3, 1200, 0.75)
        assert result.variant == ab_testing.current_variant
        assert ab_testing.test_results[result.variant] == result

    @pytest.mark.asyncio
    async def test_history_keeps_every_result(self, ab_testing):
        await ab_testing.record_test_result(0.8, 0.3, 1200, 0.70)
        await ab_testing.record_test_result(0.9, 0.2, 1100, 0.85)

        history = await ab_testing.get_test_history(ab_testing.current_variant)

        assert [r.prediction_accuracy for r in history] == [0.70, 0.85]
        assert ab_testing.test_results[ab_testing.current_variant].prediction_accuracy == 0.85

    @pytest.mark.asyncio
    async def test_empty_history(self, ab_testing):
        assert await ab_testing.get_test_history("wide_network") == []

    @pytest.mark.asyncio
    async def test_best_variant_defaults_to_control(self, ab_testing):
        assert ab_testing.get_best_variant() == "control"

    @pytest.mark.asyncio
    async def test_best_variant_by_prediction_accuracy(self, ab_testing):
        await ab_testing.switch_variant("small_network")
        await ab_testing.record_test_result(0.9, 0.1, 500, 0.60)
        await ab_testing.switch_variant("deep_network")
        await ab_testing.record_test_result(0.7, 0.4, 900, 0.80)

        assert ab_testing.get_best_variant() == "deep_network"


# ─────────────────────────────────────────────────────────────────────────────
# Switching
# ─────────────────────────────────────────────────────────────────────────────

class TestSwitchVariant:

    @pytest.mark.asyncio
    async def test_switch_persists(self, ab_testing, storage):
        await ab_testing.switch_variant("wide_network")

        assert ab_testing.current_variant == "wide_network"
        assert (await storage.load_state())[KEY_MODEL_VARIANT] == "wide_network"

    @pytest.mark.asyncio
    async def test_unknown_variant_rejected(self, ab_testing, storage):
        before = ab_testing.current_variant

        with pytest.raises(InvalidVariant):
            await ab_testing.switch_variant("huge_network")

        assert ab_testing.current_variant == before
        assert (await storage.load_state())[KEY_MODEL_VARIANT] == before


# ─────────────────────────────────────────────────────────────────────────────
# Model versions
# ─────────────────────────────────────────────────────────────────────────────

class TestModelVersion:

    @pytest.mark.asyncio
    async def test_description_names_architecture(self, ab_testing):
        await ab_testing.switch_variant("deep_network")

        version = ab_testing.create_model_version(habit_id="h1", accuracy=0.9, q_table_size=12)

        assert version.description == (
            "Architecture: deep_network (input=10, hidden=[8, 8], output=3, lr=0.01)"
        )
        assert version.version == 1
        assert version.q_table_size == 12
