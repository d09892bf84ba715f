"""
File: reinforcement_agent.py
Description: Tabular Q-learning recommender for habit completion.
The agent learns offline from a habit's completion history (each consecutive pair of completions is one transition)
and online from explicit feedback on the actions it recommends.

MDP: ⟨S, A, R, γ⟩
- S: (time bucket, day bucket, streak bucket, context bucket), packed into a single row index
- A: ActionType (7 actions)
- R: cadence bonus/penalty + time consistency bonus + mood change
- γ: Discount factor for future rewards
"""

import asyncio
import logging
import math
import random
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from homeassistant.core import HomeAssistant
from homeassistant.helpers.dispatcher import async_dispatcher_send

from .const import (
    HC_AI_UPDATE_SIGNAL,
    KEY_AGENT_STATE,
    LEARNING_RATE,
    GAMMA,
    EXPLORATION_RATE_INITIAL,
    EXPLORATION_RATE_MIN,
    EXPLORATION_DECAY,
    NUM_ACTIONS,
    CONTEXT_BUCKETS,
    STREAK_TIERS,
    GAP_TIERS_HOURS,
    ACTIVITY_LOW,
    ACTIVITY_MEDIUM,
    DEFAULT_MOOD,
    DEFAULT_CONTEXT_BUCKET,
    REWARD_CADENCE_BONUS,
    REWARD_CADENCE_PENALTY,
    REWARD_CONSISTENCY_BONUS,
    CONSISTENCY_HOURS,
    CADENCE_DAYS,
    FEATURE_ACTIVITY_LEVEL,
)
from .models import (
    ACTION_TYPES,
    ActionType,
    Habit,
    HabitCompletion,
    ReinforcementAction,
    ReinforcementState,
    q_key,
)
from .storage import StorageManager

_LOGGER = logging.getLogger(f"{__name__}.ai_model")

MS_PER_HOUR = 1000 * 60 * 60
MS_PER_DAY = MS_PER_HOUR * 24

ACTION_DESCRIPTIONS = {
    ActionType.SEND_NOTIFICATION: "Complete habit within the next few hours",
    ActionType.ADJUST_DIFFICULTY: "Complete habit today",
    ActionType.SUGGEST_PAIRING: "Complete habit tomorrow",
    ActionType.PROVIDE_ENCOURAGEMENT: "Complete habit within the next few days",
    ActionType.SUGGEST_ENVIRONMENT_CHANGE: "Schedule habit for later this week",
    ActionType.SUGGEST_TIME_CHANGE: "Try a different time for your habit",
    ActionType.SUGGEST_SOCIAL_SUPPORT: "Get support from friends for your habit",
}


def streak_bucket(streak: int) -> int:
    for bucket, limit in enumerate(STREAK_TIERS):
        if streak <= limit:
            return bucket
    return len(STREAK_TIERS)


def gap_tier(gap_hours: int) -> int:
    for tier, limit in enumerate(GAP_TIERS_HOURS):
        if gap_hours <= limit:
            return tier
    return len(GAP_TIERS_HOURS)


def activity_bucket(activity_level: float) -> int:
    if activity_level < ACTIVITY_LOW:
        return 0
    if activity_level < ACTIVITY_MEDIUM:
        return 1
    return 2


class ReinforcementLearningAgent:
    """
    Q-learning agent for a single habit at a time.

    Switching to another habit discards the learned table. Calls for the same habit
    must go through the async_* methods, which serialize on a per-habit lock.
    """

    def __init__(
        self,
        hass: Optional[HomeAssistant] = None,
        storage_manager: Optional[StorageManager] = None,
        rng: Optional[random.Random] = None,
    ):
        self.hass = hass
        self.storage = storage_manager
        self._rng = rng or random.Random()

        self.q_table: Dict[int, float] = {}
        self.learning_rate = LEARNING_RATE
        self.epsilon = EXPLORATION_RATE_INITIAL
        self.episodes = 0
        self.habit_id: Optional[str] = None

        self.current_state: Optional[ReinforcementState] = None
        self.recommended_action: Optional[ReinforcementAction] = None

        self._locks: Dict[str, asyncio.Lock] = {}

    async def setup(self):
        """Load the learned table from persistent storage."""
        if self.storage:
            await self._load_persistent_state()
        _LOGGER.info("ReinforcementLearningAgent initialized - habit: %s, Q-table size: %d", self.habit_id, len(self.q_table))

    def _lock_for(self, habit_id: str) -> asyncio.Lock:
        if habit_id not in self._locks:
            self._locks[habit_id] = asyncio.Lock()
        return self._locks[habit_id]

    # ==================== LEARNING FROM HISTORY ====================

    def _switch_habit(self, habit_id: str):
        """Point the agent at another habit. Q-table keys carry no habit, so the table starts empty."""
        if self.habit_id == habit_id:
            return
        _LOGGER.debug("Switching agent from habit %s to %s, resetting Q-table", self.habit_id, habit_id)
        self.reset()
        self.habit_id = habit_id

    def reset(self):
        """Forget everything learned for the current habit."""
        self.q_table = {}
        self.epsilon = EXPLORATION_RATE_INITIAL
        self.episodes = 0
        self.current_state = None
        self.recommended_action = None

    def initialize(self, habit: Habit, completions: List[HabitCompletion]):
        """Load a habit and replay its completion history as offline transitions."""
        self._switch_habit(habit.id)

        ordered = sorted(completions, key=lambda c: c.completion_date)
        for completion, next_completion in zip(ordered, ordered[1:]):
            state = self.state_from_completion(habit, completion)
            action = self.infer_action(completion, next_completion)
            reward = self.calculate_reward(habit, completion, next_completion)
            next_state = self.state_from_completion(habit, next_completion)

            self._update_q_value(state, action.index, reward, next_state)
            self.episodes += 1

        self.epsilon = max(EXPLORATION_RATE_MIN, EXPLORATION_RATE_INITIAL * math.exp(-EXPLORATION_DECAY * self.episodes))
        _LOGGER.info(
            "Learned from %d completions of %s: episodes=%d, epsilon=%.3f, Q-table size=%d",
            len(ordered), habit.name, self.episodes, self.epsilon, len(self.q_table)
        )

    def state_from_completion(self, habit: Habit, completion: HabitCompletion) -> ReinforcementState:
        moment = completion.moment
        if completion.mood is None:
            context = DEFAULT_CONTEXT_BUCKET
        else:
            context = max(0, min(CONTEXT_BUCKETS - 1, completion.mood // 2))

        return ReinforcementState(
            habit_id=habit.id,
            time_bucket=moment.hour // 3,
            day_bucket=moment.weekday(),
            streak_bucket=streak_bucket(habit.streak),
            context_bucket=context,
        )

    @staticmethod
    def infer_action(completion: HabitCompletion, next_completion: HabitCompletion) -> ReinforcementAction:
        """Action implied by how long the user took to complete the habit again."""
        gap_hours = (next_completion.completion_date - completion.completion_date) // MS_PER_HOUR
        tier = gap_tier(gap_hours)
        return ReinforcementAction(ACTION_TYPES[tier % NUM_ACTIONS])

    @staticmethod
    def calculate_reward(habit: Habit, completion: HabitCompletion, next_completion: HabitCompletion) -> float:
        """
        Reward for a transition between two completions.

        Returns:
            cadence bonus (+10) or penalty (-5), +5 if both completions happened within 2 hours
            of the same time of day, plus the change in mood (missing mood counts as 3)
        """
        reward = 0.0

        gap_days = (next_completion.completion_date - completion.completion_date) // MS_PER_DAY
        cadence = CADENCE_DAYS.get(habit.frequency.value)
        if cadence is not None:
            reward += REWARD_CADENCE_BONUS if gap_days <= cadence else REWARD_CADENCE_PENALTY

        if abs(completion.moment.hour - next_completion.moment.hour) <= CONSISTENCY_HOURS:
            reward += REWARD_CONSISTENCY_BONUS

        previous_mood = completion.mood if completion.mood is not None else DEFAULT_MOOD
        next_mood = next_completion.mood if next_completion.mood is not None else DEFAULT_MOOD
        reward += next_mood - previous_mood

        return reward

    def _update_q_value(self, state: ReinforcementState, action_index: int, reward: float, next_state: ReinforcementState):
        """
        Q-learning update:
        Q(s,a) ← Q(s,a) + α[R + γ max Q(s',a') - Q(s,a)]
        """
        key = q_key(state, action_index)
        current_q = self.q_table.get(key, 0.0)
        max_next_q = self._max_q(next_state)

        new_q = current_q + self.learning_rate * (reward + GAMMA * max_next_q - current_q)
        self.q_table[key] = new_q

        _LOGGER.debug("Q-table updated: state=%d, action=%d, reward=%.2f, Q: %.2f → %.2f",
                      state.index, action_index, reward, current_q, new_q)

    def _q_values(self, state: ReinforcementState) -> List[float]:
        return [self.q_table.get(q_key(state, a), 0.0) for a in range(NUM_ACTIONS)]

    def _max_q(self, state: ReinforcementState) -> float:
        # Unvisited actions count as 0, so the bootstrap term is never negative
        return max(0.0, *self._q_values(state))

    # ==================== ACTING ====================

    def get_best_action(self, state: ReinforcementState) -> ReinforcementAction:
        """Epsilon-greedy selection over all actions. Ties go to the lowest action index."""
        if self._rng.random() < self.epsilon:
            action_index = self._rng.randrange(NUM_ACTIONS)
            _LOGGER.debug("Exploration: selected random action %d", action_index)
        else:
            q_values = self._q_values(state)
            action_index = q_values.index(max(q_values))
            _LOGGER.debug("Exploitation: selected best action %d (Q=%.2f)", action_index, q_values[action_index])

        return ReinforcementAction(ACTION_TYPES[action_index])

    def update_state(
        self,
        habit: Habit,
        context_features: Sequence[float],
        now: Optional[datetime] = None,
    ) -> ReinforcementAction:
        """Build the current state from the clock and context, then publish a recommendation."""
        self._switch_habit(habit.id)
        now = now or datetime.now()
        state = ReinforcementState(
            habit_id=habit.id,
            time_bucket=now.hour // 3,
            day_bucket=now.weekday(),
            streak_bucket=streak_bucket(habit.streak),
            context_bucket=activity_bucket(context_features[FEATURE_ACTIVITY_LEVEL]),
        )
        self.current_state = state
        self.recommended_action = self.get_best_action(state)

        _LOGGER.debug("Updated state: %s, recommended action: %s", state, self.recommended_action.action_type.value)

        if self.hass is not None:
            async_dispatcher_send(self.hass, HC_AI_UPDATE_SIGNAL)

        return self.recommended_action

    def provide_feedback(self, reward: float) -> Optional[float]:
        """
        Online correction for the last recommendation:
        Q(s,a) ← Q(s,a) + α[R - Q(s,a)]

        Returns:
            The new Q-value, or None if nothing has been recommended yet
        """
        if self.current_state is None or self.recommended_action is None:
            _LOGGER.debug("Feedback ignored, no recommendation has been published")
            return None

        key = q_key(self.current_state, self.recommended_action.index)
        current_q = self.q_table.get(key, 0.0)
        new_q = current_q + self.learning_rate * (reward - current_q)
        self.q_table[key] = new_q

        _LOGGER.debug("Feedback reward=%.2f for action %s, Q: %.2f → %.2f",
                      reward, self.recommended_action.action_type.value, current_q, new_q)
        return new_q

    # ==================== SERIALIZED ACCESS ====================

    async def async_initialize(self, habit: Habit, completions: List[HabitCompletion], replay: bool = False):
        """Learn from completions. With replay=True the table is rebuilt from scratch."""
        async with self._lock_for(habit.id):
            if replay:
                self.reset()
            self.initialize(habit, completions)
            await self._save_persistent_state()

    async def async_update_state(self, habit: Habit, context_features: Sequence[float]) -> ReinforcementAction:
        async with self._lock_for(habit.id):
            return self.update_state(habit, context_features)

    async def async_provide_feedback(self, reward: float) -> Optional[float]:
        if self.current_state is None:
            return None
        async with self._lock_for(self.current_state.habit_id):
            new_q = self.provide_feedback(reward)
            await self._save_persistent_state()
            return new_q

    # ==================== DIAGNOSTICS ====================

    def get_q_table_size(self) -> int:
        return len(self.q_table)

    @staticmethod
    def get_action_description(action: ReinforcementAction) -> str:
        return ACTION_DESCRIPTIONS[action.action_type]

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict:
        # JSON object keys must be strings
        return {
            "habit_id": self.habit_id,
            "epsilon": float(self.epsilon),
            "episodes": self.episodes,
            "q_table": {str(key): float(value) for key, value in self.q_table.items()},
        }

    def load_dict(self, data: dict):
        self.habit_id = data.get("habit_id")
        self.epsilon = float(data.get("epsilon", EXPLORATION_RATE_INITIAL))
        self.episodes = int(data.get("episodes", 0))

        self.q_table = {}
        for key, value in (data.get("q_table") or {}).items():
            try:
                self.q_table[int(key)] = float(value)
            except (TypeError, ValueError):
                _LOGGER.warning("Skipping invalid Q-table entry '%s'", key)

    async def _load_persistent_state(self):
        state = await self.storage.load_state()
        if KEY_AGENT_STATE in state:
            self.load_dict(state[KEY_AGENT_STATE])
            _LOGGER.info("Loaded Q-table with %d entries for habit %s", len(self.q_table), self.habit_id)

    async def _save_persistent_state(self):
        if not self.storage:
            return
        await self.storage.update_state_field(KEY_AGENT_STATE, self.to_dict())
