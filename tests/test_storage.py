"""
Tests for storage.py

Covers:
- Database initialization (habit_data.db schema, data directory)
- Habits: upsert, lookup, listing, deletion with completion log
- Completions: insertion and chronological retrieval
- JSON state: save/load, field updates, mapping entries, list append, concurrent writers, corrupt file recovery
- reset_all_data
"""
import asyncio
import sqlite3

import pytest
import pytest_asyncio

from custom_components.habit_coach.models import Habit, HabitCompletion, HabitFrequency
from custom_components.habit_coach.storage import StorageManager


@pytest_asyncio.fixture
async def storage(mock_hass):
    sm = StorageManager(mock_hass)
    await sm.setup()
    return sm


def make_completion(index: int, completion_date: int, habit_id="h1", mood=None):
    return HabitCompletion(id=f"c{index}", habit_id=habit_id, completion_date=completion_date, mood=mood)


# ─────────────────────────────────────────────────────────────────────────────
# Initialization
# ─────────────────────────────────────────────────────────────────────────────

class TestStorageInit:

    @pytest.mark.asyncio
    async def test_creates_data_directory(self, storage, tmp_path):
        assert storage.config_dir == tmp_path / "habit_coach_data"
        assert storage.config_dir.exists()

    @pytest.mark.asyncio
    async def test_creates_database(self, storage):
        assert storage.db_path.exists()

    @pytest.mark.asyncio
    async def test_creates_tables(self, storage):
        conn = sqlite3.connect(storage.db_path)
        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}
        conn.close()

        assert {"habits", "habit_completions"}.issubset(tables)

    @pytest.mark.asyncio
    async def test_setup_is_idempotent(self, storage):
        await storage.setup()
        assert await storage.get_habits() == []


# ─────────────────────────────────────────────────────────────────────────────
# Habits
# ─────────────────────────────────────────────────────────────────────────────

class TestHabits:

    @pytest.mark.asyncio
    async def test_save_and_get(self, storage):
        habit = Habit(id="h1", name="Read", frequency=HabitFrequency.WEEKLY, streak=4, category="learning")
        await storage.save_habit(habit)

        assert await storage.get_habit("h1") == habit

    @pytest.mark.asyncio
    async def test_unknown_habit(self, storage):
        assert await storage.get_habit("missing") is None

    @pytest.mark.asyncio
    async def test_save_updates_existing(self, storage):
        await storage.save_habit(Habit(id="h1", name="Read"))
        await storage.save_habit(Habit(id="h1", name="Read more", streak=2))

        habit = await storage.get_habit("h1")
        assert habit.name == "Read more"
        assert habit.streak == 2
        assert len(await storage.get_habits()) == 1

    @pytest.mark.asyncio
    async def test_delete_removes_completions(self, storage):
        await storage.save_habit(Habit(id="h1", name="Read"))
        await storage.log_completion(make_completion(0, 1000))

        await storage.delete_habit("h1")

        assert await storage.get_habit("h1") is None
        assert await storage.get_completions("h1") == []


# ─────────────────────────────────────────────────────────────────────────────
# Completions
# ─────────────────────────────────────────────────────────────────────────────

class TestCompletions:

    @pytest.mark.asyncio
    async def test_completions_returned_oldest_first(self, storage):
        await storage.log_completion(make_completion(2, 3000))
        await storage.log_completion(make_completion(0, 1000, mood=4))
        await storage.log_completion(make_completion(1, 2000))

        completions = await storage.get_completions("h1")

        assert [c.id for c in completions] == ["c0", "c1", "c2"]
        assert completions[0].mood == 4
        assert completions[1].mood is None

    @pytest.mark.asyncio
    async def test_same_moment_keeps_logging_order(self, storage):
        await storage.log_completion(make_completion(1, 1000))
        await storage.log_completion(make_completion(0, 1000))

        assert [c.id for c in await storage.get_completions("h1")] == ["c1", "c0"]

    @pytest.mark.asyncio
    async def test_completions_filtered_by_habit(self, storage):
        await storage.log_completion(make_completion(0, 1000, habit_id="h1"))
        await storage.log_completion(make_completion(1, 2000, habit_id="h2"))

        completions = await storage.get_completions("h2")
        assert [c.id for c in completions] == ["c1"]


# ─────────────────────────────────────────────────────────────────────────────
# Persistent state
# ─────────────────────────────────────────────────────────────────────────────

class TestState:

    @pytest.mark.asyncio
    async def test_missing_state_is_empty(self, storage):
        assert await storage.load_state() == {}

    @pytest.mark.asyncio
    async def test_save_and_load(self, storage):
        await storage.save_state({"model_variant": "control"})
        assert await storage.load_state() == {"model_variant": "control"}

    @pytest.mark.asyncio
    async def test_update_field_keeps_other_keys(self, storage):
        await storage.save_state({"user_group": "abc", "model_variant": "control"})
        await storage.update_state_field("model_variant", "wide_network")

        assert await storage.load_state() == {"user_group": "abc", "model_variant": "wide_network"}

    @pytest.mark.asyncio
    async def test_append_list(self, storage):
        await storage.append_state_list("test_results_control", {"accuracy": 0.5})
        await storage.append_state_list("test_results_control", {"accuracy": 0.7})

        state = await storage.load_state()
        assert [r["accuracy"] for r in state["test_results_control"]] == [0.5, 0.7]

    @pytest.mark.asyncio
    async def test_update_several_fields(self, storage):
        await storage.save_state({"rl_agent": {}})
        await storage.update_state_fields({"user_group": "abc", "model_variant": "control"})

        assert await storage.load_state() == {"rl_agent": {}, "user_group": "abc", "model_variant": "control"}

    @pytest.mark.asyncio
    async def test_set_dict_item_keeps_other_entries(self, storage):
        await storage.set_state_dict_item("category_models", "fitness", "/a")
        await storage.set_state_dict_item("category_models", "reading", "/b")

        assert (await storage.load_state())["category_models"] == {"fitness": "/a", "reading": "/b"}

    @pytest.mark.asyncio
    async def test_concurrent_writes_are_not_lost(self, mock_hass):
        # Executor jobs run on real threads so writers interleave at every await
        async def async_executor_job(func, *args):
            return await asyncio.get_running_loop().run_in_executor(None, func, *args)
        mock_hass.async_add_executor_job = async_executor_job

        storage = StorageManager(mock_hass)
        await storage.setup()

        await asyncio.gather(
            *(storage.append_state_list("test_results_control", {"run": i}) for i in range(10)),
            storage.update_state_field("rl_agent", {"habit_id": "h1"}),
            storage.set_state_dict_item("category_models", "fitness", "/a"),
        )

        state = await storage.load_state()
        assert sorted(r["run"] for r in state["test_results_control"]) == list(range(10))
        assert state["rl_agent"] == {"habit_id": "h1"}
        assert state["category_models"] == {"fitness": "/a"}

    @pytest.mark.asyncio
    async def test_corrupt_state_file_loads_empty(self, storage):
        storage.state_file.write_text("{not json")
        assert await storage.load_state() == {}


# ─────────────────────────────────────────────────────────────────────────────
# Reset
# ─────────────────────────────────────────────────────────────────────────────

class TestReset:

    @pytest.mark.asyncio
    async def test_reset_all_data(self, storage):
        await storage.save_habit(Habit(id="h1", name="Read"))
        await storage.log_completion(make_completion(0, 1000))
        await storage.save_state({"model_variant": "control"})

        await storage.reset_all_data()

        assert await storage.get_habits() == []
        assert await storage.get_completions("h1") == []
        assert not storage.state_file.exists()
