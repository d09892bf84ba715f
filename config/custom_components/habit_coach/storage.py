"""
Storage management for Habit Coach integration.
- SQLite: Habits and their completion log
- JSON: Persistent learned state (Q-table, A/B assignment, test result history, category models)
"""
import logging
import sqlite3
import json
import asyncio
from pathlib import Path
from typing import List, Dict, Optional, Any
from homeassistant.core import HomeAssistant

from .const import DATA_DIR_NAME
from .models import Habit, HabitCompletion, HabitFrequency

_LOGGER = logging.getLogger(__name__)


class StorageManager:
    """Manages SQLite and JSON storage for Habit Coach."""

    def __init__(self, hass: HomeAssistant, config_dir: str = None):
        """Initialize storage manager."""
        self.hass = hass

        # Use Home Assistant's configuration directory
        if config_dir is None:
            config_dir = hass.config.path(DATA_DIR_NAME)

        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.config_dir / "habit_data.db"
        self.state_file = self.config_dir / "state.json"

        self._lock = asyncio.Lock()

        _LOGGER.info("Storage initialized at: %s", self.config_dir)

    async def setup(self):
        """Setup database schema."""
        await self._init_database()

    async def _init_database(self):
        """Initialize SQLite database with schema."""
        def _create_tables():
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS habits (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    frequency TEXT NOT NULL,
                    streak INTEGER DEFAULT 0,
                    category TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS habit_completions (
                    id TEXT PRIMARY KEY,
                    habit_id TEXT NOT NULL,
                    completion_date INTEGER NOT NULL,
                    mood INTEGER,
                    FOREIGN KEY (habit_id) REFERENCES habits(id)
                )
            """)

            # Index for faster per-habit history queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_completions_habit
                ON habit_completions(habit_id, completion_date)
            """)

            conn.commit()
            conn.close()
            _LOGGER.info("Database schema initialized")

        await self.hass.async_add_executor_job(_create_tables)

    # ==================== HABITS (SQLite) ====================

    async def save_habit(self, habit: Habit):
        """Insert or update a habit."""
        def _upsert():
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO habits (id, name, frequency, streak, category)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    frequency = excluded.frequency,
                    streak = excluded.streak,
                    category = excluded.category
            """, (habit.id, habit.name, habit.frequency.value, habit.streak, habit.category))
            conn.commit()
            conn.close()

        await self.hass.async_add_executor_job(_upsert)

    async def get_habit(self, habit_id: str) -> Optional[Habit]:
        def _query():
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, name, frequency, streak, category FROM habits WHERE id = ?",
                (habit_id,)
            )
            row = cursor.fetchone()
            conn.close()
            return row

        row = await self.hass.async_add_executor_job(_query)
        if row is None:
            return None
        return Habit(id=row[0], name=row[1], frequency=HabitFrequency(row[2]), streak=row[3], category=row[4])

    async def get_habits(self) -> List[Habit]:
        def _query():
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()
            cursor.execute("SELECT id, name, frequency, streak, category FROM habits ORDER BY created_at ASC")
            rows = cursor.fetchall()
            conn.close()
            return rows

        rows = await self.hass.async_add_executor_job(_query)
        return [
            Habit(id=r[0], name=r[1], frequency=HabitFrequency(r[2]), streak=r[3], category=r[4])
            for r in rows
        ]

    async def delete_habit(self, habit_id: str):
        """Remove a habit and its completion log."""
        def _delete():
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()
            cursor.execute("DELETE FROM habit_completions WHERE habit_id = ?", (habit_id,))
            cursor.execute("DELETE FROM habits WHERE id = ?", (habit_id,))
            conn.commit()
            conn.close()

        await self.hass.async_add_executor_job(_delete)

    # ==================== COMPLETIONS (SQLite) ====================

    async def log_completion(self, completion: HabitCompletion):
        """Store a single completion."""
        def _insert():
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO habit_completions (id, habit_id, completion_date, mood)
                VALUES (?, ?, ?, ?)
            """, (completion.id, completion.habit_id, completion.completion_date, completion.mood))
            conn.commit()
            conn.close()

        await self.hass.async_add_executor_job(_insert)

    async def get_completions(self, habit_id: str) -> List[HabitCompletion]:
        """
        Get the completion log of a habit.

        Returns:
            Completions in chronological order (oldest first)
        """
        def _query():
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()
            cursor.execute("""
                SELECT id, habit_id, completion_date, mood FROM habit_completions
                WHERE habit_id = ?
                ORDER BY completion_date ASC, rowid ASC
            """, (habit_id,))
            rows = cursor.fetchall()
            conn.close()
            return rows

        rows = await self.hass.async_add_executor_job(_query)
        return [HabitCompletion(id=r[0], habit_id=r[1], completion_date=r[2], mood=r[3]) for r in rows]

    # ==================== PERSISTENT STATE (JSON) ====================

    def _read_state_file(self) -> Dict[str, Any]:
        if not self.state_file.exists():
            _LOGGER.info("No existing state file found")
            return {}

        try:
            with open(self.state_file, 'r') as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            _LOGGER.error("Failed to load state: %s", e)
            return {}

        _LOGGER.debug("State loaded from %s", self.state_file)
        return state

    def _write_state_file(self, state_data: Dict[str, Any]):
        with open(self.state_file, 'w') as f:
            json.dump(state_data, f, indent=2)

        _LOGGER.debug("State saved to %s", self.state_file)

    async def save_state(self, state_data: Dict[str, Any]):
        """
        Save persistent state to JSON.

        Expected keys:
        - rl_agent: Q-learning table and exploration state
        - user_group / model_variant: A/B testing assignment
        - test_results_<variant>: A/B test result history
        - category_models: Aggregated model path per habit category
        """
        async with self._lock:
            await self.hass.async_add_executor_job(self._write_state_file, state_data)

    async def load_state(self) -> Dict[str, Any]:
        """
        Load persistent state from JSON.

        Returns empty dict if file doesn't exist.
        """
        async with self._lock:
            return await self.hass.async_add_executor_job(self._read_state_file)

    async def update_state_field(self, key: str, value: Any):
        """Update a single field in the state file."""
        await self.update_state_fields({key: value})

    async def update_state_fields(self, fields: Dict[str, Any]):
        """Update several fields in the state file at once."""
        def _update():
            state = self._read_state_file()
            state.update(fields)
            self._write_state_file(state)

        async with self._lock:
            await self.hass.async_add_executor_job(_update)

    async def set_state_dict_item(self, key: str, item_key: str, value: Any):
        """Set one entry of a mapping field in the state file."""
        def _set():
            state = self._read_state_file()
            mapping = state.get(key) or {}
            mapping[item_key] = value
            state[key] = mapping
            self._write_state_file(state)

        async with self._lock:
            await self.hass.async_add_executor_job(_set)

    async def append_state_list(self, key: str, item: Any):
        """Append an item to a list field in the state file."""
        def _append():
            state = self._read_state_file()
            items = state.get(key) or []
            items.append(item)
            state[key] = items
            self._write_state_file(state)

        async with self._lock:
            await self.hass.async_add_executor_job(_append)

    # ==================== CLEANUP ====================

    async def reset_all_data(self):
        """Reset all data (for testing/debugging)."""
        def _reset():
            # Clear database
            if self.db_path.exists():
                conn = sqlite3.connect(str(self.db_path))
                cursor = conn.cursor()
                cursor.execute("DELETE FROM habit_completions")
                cursor.execute("DELETE FROM habits")
                conn.commit()
                conn.close()

            # Clear state file
            if self.state_file.exists():
                self.state_file.unlink()

            _LOGGER.warning("All data reset")

        async with self._lock:
            await self.hass.async_add_executor_job(_reset)
