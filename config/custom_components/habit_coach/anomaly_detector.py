"""
File: anomaly_detector.py
Description: Flags statistically unusual habit completions.
Three independent passes run over a habit's completion log:
- Time: z-score of the completion hour against the habit's own hours
- Frequency: z-score of the day gap between consecutive completions against the observed gaps
- Pattern: average distance of (hour, weekday, day of month) to all other completions, plus jitter.
  This is a lightweight stand-in for an isolation forest, not the real algorithm.
Only the latest batch of anomalies is kept.
"""

import logging
import random
from typing import List, Optional

import numpy as np

from .const import (
    MIN_COMPLETIONS_FOR_DETECTION,
    Z_SCORE_THRESHOLD,
    PATTERN_ANOMALY_THRESHOLD,
    PATTERN_DISTANCE_SCALE,
    PATTERN_JITTER,
    EXPECTED_GAP_DAYS,
)
from .errors import InsufficientData
from .models import AnomalyType, Habit, HabitAnomaly, HabitCompletion

_LOGGER = logging.getLogger(__name__)

MS_PER_DAY = 1000 * 60 * 60 * 24
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

ANOMALY_EXPLANATIONS = {
    AnomalyType.TIME: (
        "This completion occurred at an unusual time compared to your typical pattern. "
        "You might want to consider if this time works better for you or if it was just a one-time exception."
    ),
    AnomalyType.FREQUENCY: (
        "The time between this completion and the previous one was unusual. "
        "This could indicate a change in your habit routine or a temporary disruption."
    ),
    AnomalyType.PATTERN: (
        "This completion doesn't fit your usual pattern in terms of day of week and time of day. "
        "Consider if this new pattern might work better for maintaining your habit."
    ),
}


def _sunday_first_weekday(completion: HabitCompletion) -> int:
    """Day of week numbered 1 (Sunday) to 7 (Saturday)."""
    return completion.moment.isoweekday() % 7 + 1


class AnomalyDetector:
    """Z-score and distance based anomaly detection over completion logs."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self.anomalies: List[HabitAnomaly] = []

    def detect_anomalies(
        self,
        habit: Habit,
        completions: List[HabitCompletion],
        strict: bool = False,
    ) -> List[HabitAnomaly]:
        """
        Run all detection passes and replace the stored batch.

        Args:
            habit: Habit the completions belong to
            completions: Completion log, any order
            strict: Raise InsufficientData instead of returning [] when the log is too short

        Returns:
            Anomalies found, possibly empty
        """
        self.anomalies = []

        if len(completions) < MIN_COMPLETIONS_FOR_DETECTION:
            _LOGGER.debug(
                "Not enough completions for anomaly detection on %s (%d/%d)",
                habit.id, len(completions), MIN_COMPLETIONS_FOR_DETECTION
            )
            if strict:
                raise InsufficientData(MIN_COMPLETIONS_FOR_DETECTION, len(completions))
            return []

        anomalies = []
        anomalies.extend(self._detect_time_anomalies(completions))
        anomalies.extend(self._detect_frequency_anomalies(habit, completions))
        anomalies.extend(self._detect_pattern_anomalies(completions))

        self.anomalies = anomalies
        _LOGGER.info("Detected %d anomalies for habit %s", len(anomalies), habit.id)
        return anomalies

    def _detect_time_anomalies(self, completions: List[HabitCompletion]) -> List[HabitAnomaly]:
        hours = np.array([c.moment.hour for c in completions], dtype=float)
        mean = np.mean(hours)
        std = np.std(hours)

        if std == 0:
            return []

        anomalies = []
        for completion, hour in zip(completions, hours):
            z_score = abs((hour - mean) / std)
            if z_score > Z_SCORE_THRESHOLD:
                anomalies.append(HabitAnomaly(
                    habit_id=completion.habit_id,
                    completion_id=completion.id,
                    timestamp=completion.completion_date,
                    type=AnomalyType.TIME,
                    score=min(z_score / (Z_SCORE_THRESHOLD * 2), 1.0),
                    description=f"Unusual completion time: {int(hour)}:00 (typically around {int(mean)}:00)",
                ))
        return anomalies

    def _detect_frequency_anomalies(self, habit: Habit, completions: List[HabitCompletion]) -> List[HabitAnomaly]:
        ordered = sorted(completions, key=lambda c: c.completion_date)
        gaps = np.array([
            (current.completion_date - previous.completion_date) // MS_PER_DAY
            for previous, current in zip(ordered, ordered[1:])
        ], dtype=float)

        mean = np.mean(gaps)
        std = np.std(gaps)
        if std == 0:
            return []

        expected = EXPECTED_GAP_DAYS.get(habit.frequency.value, 1)

        anomalies = []
        for completion, gap in zip(ordered[1:], gaps):
            z_score = abs((gap - mean) / std)
            if z_score <= Z_SCORE_THRESHOLD:
                continue

            kind = "long" if gap > expected else "short"
            anomalies.append(HabitAnomaly(
                habit_id=completion.habit_id,
                completion_id=completion.id,
                timestamp=completion.completion_date,
                type=AnomalyType.FREQUENCY,
                score=min(z_score / (Z_SCORE_THRESHOLD * 2), 1.0),
                description=f"Unusually {kind} gap: {int(gap)} days (expected around {expected} days)",
            ))
        return anomalies

    def _detect_pattern_anomalies(self, completions: List[HabitCompletion]) -> List[HabitAnomaly]:
        features = np.array([
            (c.moment.hour / 24.0, _sunday_first_weekday(c) / 7.0, c.moment.day / 31.0)
            for c in completions
        ])
        scores = self._distance_scores(features)

        anomalies = []
        for completion, score in zip(completions, scores):
            if score <= PATTERN_ANOMALY_THRESHOLD:
                continue

            day_name = DAY_NAMES[_sunday_first_weekday(completion) - 1]
            anomalies.append(HabitAnomaly(
                habit_id=completion.habit_id,
                completion_id=completion.id,
                timestamp=completion.completion_date,
                type=AnomalyType.PATTERN,
                score=float(score),
                description=f"Unusual pattern: completed on {day_name} at {completion.moment.hour}:00",
            ))
        return anomalies

    def _distance_scores(self, features: np.ndarray) -> List[float]:
        """Scaled mean distance of each point to all others, plus up to 0.2 of random jitter."""
        count = len(features)
        distances = np.linalg.norm(features[:, None, :] - features[None, :, :], axis=-1)
        mean_distances = distances.sum(axis=1) / max(count - 1, 1)

        scores = []
        for mean_distance in mean_distances:
            normalized = float(np.clip(mean_distance * PATTERN_DISTANCE_SCALE, 0.0, 1.0))
            jitter = self._rng.random() * PATTERN_JITTER
            scores.append(float(np.clip(normalized + jitter, 0.0, 1.0)))
        return scores

    @staticmethod
    def get_anomaly_explanation(anomaly: HabitAnomaly) -> str:
        return ANOMALY_EXPLANATIONS[anomaly.type]
