import logging
from homeassistant.components.sensor import SensorEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.dispatcher import async_dispatcher_connect

from .const import DOMAIN, HC_UPDATE_SIGNAL, HC_AI_UPDATE_SIGNAL

_LOGGER = logging.getLogger(__name__)


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Setup of virtual sensors."""
    agent = hass.data[DOMAIN]["agent"]
    collector = hass.data[DOMAIN]["collector"]
    detector = hass.data[DOMAIN]["anomaly_detector"]
    ab_testing = hass.data[DOMAIN]["ab_testing"]
    federated = hass.data[DOMAIN]["federated"]

    sensors = [
        ContextFeaturesSensor(collector),
        RecommendedActionSensor(agent),
        QTableSizeSensor(agent),
        AnomalyCountSensor(detector),
        ModelVariantSensor(ab_testing),
        ImportedModelsSensor(hass, federated),
    ]

    async_add_entities(sensors)


class HabitCoachSensor(SensorEntity):
    """Base class to handle dispatcher-driven updates."""
    _attr_should_poll = False
    _signal = HC_AI_UPDATE_SIGNAL

    async def async_added_to_hass(self):
        """Register the listener when the entity is added to HA."""
        await super().async_added_to_hass()
        self.async_on_remove(
            async_dispatcher_connect(
                self.hass,
                self._signal,
                self._update_callback
            )
        )

        self._update_callback()

    @callback
    def _update_callback(self):
        """Force the dashboard to update when the signal is received."""
        if hasattr(self, "_async_update_state"):
            # If the sensor defines an async update method (e.g., file system call), run it in the background
            self.hass.async_create_task(self._async_update_and_write())
        else:
            self.async_write_ha_state()

    async def _async_update_and_write(self):
        """Helper to await the update and then write state."""
        await self._async_update_state()
        self.async_write_ha_state()


class ContextFeaturesSensor(HabitCoachSensor):
    """Current context vector. State is the time-of-day slot, every slot is exposed as an attribute."""
    _signal = HC_UPDATE_SIGNAL

    def __init__(self, collector):
        self._collector = collector
        self._attr_name = "Habit Coach Context"
        self._attr_unique_id = f"{DOMAIN}_context"
        self._attr_icon = "mdi:cellphone-information"

    @property
    def native_value(self):
        return round(self._collector.features[0], 3)

    @property
    def extra_state_attributes(self):
        return {name: round(value, 3) for name, value in self._collector.get_feature_dict().items()}


class RecommendedActionSensor(HabitCoachSensor):
    """Latest action recommended by the agent."""

    def __init__(self, agent):
        self._agent = agent
        self._attr_name = "Recommended Habit Action"
        self._attr_unique_id = f"{DOMAIN}_recommended_action"
        self._attr_icon = "mdi:lightbulb-on-outline"

    @property
    def native_value(self):
        action = self._agent.recommended_action
        if action is None:
            return None
        return self._agent.get_action_description(action)

    @property
    def extra_state_attributes(self):
        action = self._agent.recommended_action
        state = self._agent.current_state
        return {
            "action_type": action.action_type.value if action else None,
            "habit_id": state.habit_id if state else None,
            "exploration_rate": round(self._agent.epsilon, 3),
            "episodes": self._agent.episodes,
        }


class QTableSizeSensor(HabitCoachSensor):
    def __init__(self, agent):
        self._agent = agent
        self._attr_name = "Habit Coach Q-table Size"
        self._attr_unique_id = f"{DOMAIN}_q_table_size"
        self._attr_icon = "mdi:table"

    @property
    def native_value(self):
        return self._agent.get_q_table_size()


class AnomalyCountSensor(HabitCoachSensor):
    """Number of anomalies found by the last detection run."""

    def __init__(self, detector):
        self._detector = detector
        self._attr_name = "Habit Anomalies"
        self._attr_unique_id = f"{DOMAIN}_anomaly_count"
        self._attr_icon = "mdi:chart-bell-curve"

    @property
    def native_value(self):
        return len(self._detector.anomalies)

    @property
    def extra_state_attributes(self):
        return {
            "anomalies": [
                {"type": a.type.value, "score": round(a.score, 3), "description": a.description}
                for a in self._detector.anomalies
            ]
        }


class ModelVariantSensor(HabitCoachSensor):
    """A/B testing variant of this installation."""

    def __init__(self, ab_testing):
        self._ab_testing = ab_testing
        self._attr_name = "Habit Model Variant"
        self._attr_unique_id = f"{DOMAIN}_model_variant"
        self._attr_icon = "mdi:ab-testing"

    @property
    def native_value(self):
        return self._ab_testing.current_variant

    @property
    def extra_state_attributes(self):
        arch = self._ab_testing.get_current_architecture()
        return {
            "best_variant": self._ab_testing.get_best_variant(),
            "hidden_layers": arch.hidden_layers,
            "learning_rate": arch.learning_rate,
        }


class ImportedModelsSensor(HabitCoachSensor):
    """Shared models waiting to be aggregated."""

    def __init__(self, hass, federated):
        self.hass = hass
        self._federated = federated
        self._attr_name = "Habit Imported Models"
        self._attr_unique_id = f"{DOMAIN}_imported_models"
        self._attr_icon = "mdi:share-variant"
        self._imported = 0
        self._aggregated = 0

    async def _async_update_state(self):
        self._imported = await self.hass.async_add_executor_job(self._federated.get_imported_model_count)
        self._aggregated = await self.hass.async_add_executor_job(self._federated.get_aggregated_model_count)

    @property
    def native_value(self):
        return self._imported

    @property
    def extra_state_attributes(self):
        return {"aggregated_models": self._aggregated}
