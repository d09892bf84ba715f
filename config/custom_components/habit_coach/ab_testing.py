"""
File: ab_testing.py
Description: A/B testing of network architectures.
Each installation is assigned once, at random, to one of the catalog variants and keeps it across restarts.
The latest test result per variant is kept in memory; every result is also appended to a durable per-variant history.
"""

import logging
import random
import uuid
from dataclasses import asdict
from typing import Dict, List, Optional

from .const import (
    NETWORK_ARCHITECTURES,
    VARIANT_CONTROL,
    KEY_USER_GROUP,
    KEY_MODEL_VARIANT,
    KEY_TEST_RESULTS_PREFIX,
)
from .errors import InvalidVariant
from .models import ModelVersion, NetworkArchitecture, TestResult
from .storage import StorageManager

_LOGGER = logging.getLogger(__name__)


def get_architecture(variant: str) -> NetworkArchitecture:
    input_size, hidden_layers, output_size, learning_rate = NETWORK_ARCHITECTURES[variant]
    return NetworkArchitecture(
        input_size=input_size,
        hidden_layers=list(hidden_layers),
        output_size=output_size,
        learning_rate=learning_rate,
    )


class ABTestingManager:
    """Variant assignment, result tracking and model version metadata."""

    def __init__(self, storage_manager: StorageManager, rng: Optional[random.Random] = None):
        self.storage = storage_manager
        self._rng = rng or random.Random()

        self.user_group: Optional[str] = None
        self.current_variant = VARIANT_CONTROL
        self.test_results: Dict[str, TestResult] = {}

    async def setup(self):
        """Load the persisted assignment, assigning a variant on first use."""
        state = await self.storage.load_state()

        if state.get(KEY_USER_GROUP) is None:
            await self._assign_user_to_group()
            return

        self.user_group = state[KEY_USER_GROUP]
        self.current_variant = state.get(KEY_MODEL_VARIANT) or VARIANT_CONTROL
        _LOGGER.info("Loaded A/B assignment: group %s, variant %s", self.user_group, self.current_variant)

    async def _assign_user_to_group(self):
        self.user_group = str(uuid.uuid4())
        self.current_variant = self._rng.choice(list(NETWORK_ARCHITECTURES))

        await self.storage.update_state_fields({
            KEY_USER_GROUP: self.user_group,
            KEY_MODEL_VARIANT: self.current_variant,
        })

        _LOGGER.info("Assigned to A/B group %s with variant %s", self.user_group, self.current_variant)

    def get_current_architecture(self) -> NetworkArchitecture:
        if self.current_variant not in NETWORK_ARCHITECTURES:
            return get_architecture(VARIANT_CONTROL)
        return get_architecture(self.current_variant)

    async def record_test_result(
        self,
        accuracy: float,
        loss: float,
        training_time_ms: int,
        prediction_accuracy: float,
    ) -> TestResult:
        """Record a result for the current variant."""
        result = TestResult(
            variant=self.current_variant,
            accuracy=accuracy,
            loss=loss,
            training_time_ms=training_time_ms,
            prediction_accuracy=prediction_accuracy,
        )
        self.test_results[result.variant] = result
        await self.storage.append_state_list(KEY_TEST_RESULTS_PREFIX + result.variant, asdict(result))

        _LOGGER.debug("Recorded test result for %s: prediction accuracy %.3f", result.variant, prediction_accuracy)
        return result

    async def get_test_history(self, variant: str) -> List[TestResult]:
        """Every result ever recorded for a variant, oldest first."""
        state = await self.storage.load_state()
        return [TestResult(**item) for item in state.get(KEY_TEST_RESULTS_PREFIX + variant, [])]

    def get_best_variant(self) -> str:
        """Variant with the highest prediction accuracy among live results."""
        if not self.test_results:
            return VARIANT_CONTROL
        return max(self.test_results.values(), key=lambda r: r.prediction_accuracy).variant

    async def switch_variant(self, variant: str):
        if variant not in NETWORK_ARCHITECTURES:
            raise InvalidVariant(f"Unknown variant '{variant}', expected one of {list(NETWORK_ARCHITECTURES)}")

        await self.storage.update_state_field(KEY_MODEL_VARIANT, variant)
        self.current_variant = variant
        _LOGGER.info("Switched A/B variant to %s", variant)

    def create_model_version(
        self,
        habit_id: Optional[str] = None,
        category: Optional[str] = None,
        accuracy: Optional[float] = None,
        loss: Optional[float] = None,
        q_table_size: Optional[int] = None,
    ) -> ModelVersion:
        """Describe the current variant for the model registry."""
        arch = self.get_current_architecture()
        return ModelVersion(
            habit_id=habit_id,
            category=category,
            accuracy=accuracy,
            loss=loss,
            q_table_size=q_table_size,
            description=(
                f"Architecture: {self.current_variant} (input={arch.input_size}, "
                f"hidden={arch.hidden_layers}, output={arch.output_size}, lr={arch.learning_rate})"
            ),
        )
