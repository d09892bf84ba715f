"""
File: errors.py
Description: Error taxonomy for the Habit Coach integration.
Every error derives from HomeAssistantError so service calls surface them to the caller as explicit failures.
An empty result (no anomalies, no imported models) is never reported through these exceptions.
"""

from homeassistant.exceptions import HomeAssistantError


class HabitCoachError(HomeAssistantError):
    """Base error for Habit Coach."""


class InsufficientData(HabitCoachError):
    """Not enough history to run an analysis."""

    def __init__(self, required: int, available: int):
        super().__init__(f"At least {required} completions are required, got {available}")
        self.required = required
        self.available = available


class SensorUnavailable(HabitCoachError):
    """A context feature has no configured or readable source."""


class IOFailure(HabitCoachError):
    """Reading or writing a model file failed or timed out."""


class SizeMismatch(HabitCoachError):
    """Model buffers of different sizes cannot be averaged."""


class InvalidVariant(HabitCoachError):
    """Unknown A/B testing variant."""


class MalformedBuffer(HabitCoachError):
    """A serialized weight buffer does not match its declared layout."""


class EvaluationTimeout(HabitCoachError):
    """A hyperparameter evaluation did not finish in time."""


class UnknownHabit(HabitCoachError):
    """No habit with the given id is stored."""
