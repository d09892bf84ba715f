"""
File: models.py
Description: Plain records shared by the Habit Coach learning pipeline.
Habits and completions are consumed as-is from storage; the reinforcement learning keys are immutable
so they can be used directly as dictionary keys, and the packed state index keeps the Q-table flat.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .const import (
    TIME_BUCKETS,
    DAY_BUCKETS,
    STREAK_BUCKETS,
    CONTEXT_BUCKETS,
    NUM_ACTIONS,
)


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(datetime.now().timestamp() * 1000)


# ==================== HABITS ====================

class HabitFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


@dataclass
class Habit:
    id: str
    name: str
    frequency: HabitFrequency = HabitFrequency.DAILY
    streak: int = 0
    category: Optional[str] = None


@dataclass
class HabitCompletion:
    id: str
    habit_id: str
    completion_date: int # epoch ms
    mood: Optional[int] = None

    @property
    def moment(self) -> datetime:
        """Completion time as a local datetime."""
        return datetime.fromtimestamp(self.completion_date / 1000)


# ==================== REINFORCEMENT LEARNING ====================

class ActionType(str, Enum):
    SEND_NOTIFICATION = "send_notification"
    ADJUST_DIFFICULTY = "adjust_difficulty"
    SUGGEST_PAIRING = "suggest_pairing"
    PROVIDE_ENCOURAGEMENT = "provide_encouragement"
    SUGGEST_ENVIRONMENT_CHANGE = "suggest_environment_change"
    SUGGEST_TIME_CHANGE = "suggest_time_change"
    SUGGEST_SOCIAL_SUPPORT = "suggest_social_support"

    @property
    def position(self) -> int:
        return ACTION_TYPES.index(self)


ACTION_TYPES: List[ActionType] = list(ActionType)


@dataclass(frozen=True)
class ReinforcementState:
    """Discretized situation of a habit. Equal buckets mean the same Q-table row."""

    habit_id: str
    time_bucket: int
    day_bucket: int
    streak_bucket: int
    context_bucket: int

    def __post_init__(self):
        bounds = (
            ("time_bucket", self.time_bucket, TIME_BUCKETS),
            ("day_bucket", self.day_bucket, DAY_BUCKETS),
            ("streak_bucket", self.streak_bucket, STREAK_BUCKETS),
            ("context_bucket", self.context_bucket, CONTEXT_BUCKETS),
        )
        for name, value, limit in bounds:
            if not 0 <= value < limit:
                raise ValueError(f"{name} must be in [0, {limit}), got {value}")

    @property
    def index(self) -> int:
        """Row index in [0, 840) packing the four buckets."""
        return (
            (self.time_bucket * DAY_BUCKETS + self.day_bucket) * STREAK_BUCKETS
            + self.streak_bucket
        ) * CONTEXT_BUCKETS + self.context_bucket


@dataclass(frozen=True)
class ReinforcementAction:
    action_type: ActionType
    parameters: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def index(self) -> int:
        return self.action_type.position


def q_key(state: ReinforcementState, action_index: int) -> int:
    """Flat Q-table key for a (state, action) pair."""
    return state.index * NUM_ACTIONS + action_index


# ==================== ANOMALIES ====================

class AnomalyType(str, Enum):
    TIME = "time"
    FREQUENCY = "frequency"
    PATTERN = "pattern"


@dataclass
class HabitAnomaly:
    habit_id: str
    completion_id: str
    timestamp: int
    type: AnomalyType
    score: float
    description: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


# ==================== HYPERPARAMETERS ====================

@dataclass(frozen=True)
class Hyperparameters:
    learning_rate: float
    hidden_layer_sizes: Tuple[int, ...]
    batch_size: int
    dropout_rate: float


@dataclass
class TrialResult:
    trial: int
    hyperparameters: Hyperparameters
    score: float


# ==================== ARCHITECTURES / A-B TESTING ====================

@dataclass
class NetworkArchitecture:
    input_size: int
    hidden_layers: List[int]
    output_size: int
    learning_rate: float

    def weight_count(self) -> int:
        """Number of connection weights in a fully connected network of this shape (no biases)."""
        if not self.hidden_layers:
            return self.input_size * self.output_size

        count = self.input_size * self.hidden_layers[0]
        for previous, current in zip(self.hidden_layers, self.hidden_layers[1:]):
            count += previous * current
        count += self.hidden_layers[-1] * self.output_size
        return count


@dataclass
class TestResult:
    variant: str
    accuracy: float
    loss: float
    training_time_ms: int
    prediction_accuracy: float
    timestamp: int = field(default_factory=now_ms)

    __test__ = False # not a pytest class


@dataclass
class ModelVersion:
    habit_id: Optional[str]
    category: Optional[str]
    accuracy: Optional[float]
    loss: Optional[float]
    q_table_size: Optional[int]
    description: str
    version: int = 1
    timestamp: int = field(default_factory=now_ms)
    file_path: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class CompressionStats:
    original_size: int
    compressed_size: int
    compression_ratio: float
    space_saved: int
    percent_saved: float
