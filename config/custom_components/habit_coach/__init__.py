import logging
import uuid
from datetime import timedelta
import voluptuous as vol
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, ServiceCall, ServiceResponse, SupportsResponse
from homeassistant.helpers import config_validation as cv
from homeassistant.helpers.event import async_track_time_interval
from homeassistant.helpers.dispatcher import async_dispatcher_send

from .const import (
    DOMAIN,
    HC_AI_UPDATE_SIGNAL,
    CONTEXT_REFRESH_MINUTES,
)
from .ab_testing import ABTestingManager
from .anomaly_detector import AnomalyDetector
from .context_collector import ContextFeatureCollector
from .errors import UnknownHabit
from .federated_learning import FederatedLearningManager
from .hyperparameter_optimizer import HyperparameterOptimizer
from .model_compressor import ModelCompressor
from .models import Habit, HabitCompletion, HabitFrequency, now_ms
from .reinforcement_agent import ReinforcementLearningAgent
from .storage import StorageManager

_LOGGER = logging.getLogger(__name__)
PLATFORMS = ["sensor"]

SERVICES = [
    "save_habit",
    "log_completion",
    "recommend",
    "provide_feedback",
    "detect_anomalies",
    "export_model",
    "import_model",
    "aggregate_models",
    "switch_variant",
    "record_test_result",
]

SAVE_HABIT_SCHEMA = vol.Schema({
    vol.Required("habit_id"): cv.string,
    vol.Required("name"): cv.string,
    vol.Optional("frequency", default=HabitFrequency.DAILY.value): vol.In([f.value for f in HabitFrequency]),
    vol.Optional("streak", default=0): vol.All(vol.Coerce(int), vol.Range(min=0)),
    vol.Optional("category"): cv.string,
})

LOG_COMPLETION_SCHEMA = vol.Schema({
    vol.Required("habit_id"): cv.string,
    vol.Optional("completed_at"): cv.datetime,
    vol.Optional("mood"): vol.All(vol.Coerce(int), vol.Range(min=1, max=5)),
})

HABIT_SCHEMA = vol.Schema({
    vol.Required("habit_id"): cv.string,
})

FEEDBACK_SCHEMA = vol.Schema({
    vol.Required("reward"): vol.Coerce(float),
})

IMPORT_SCHEMA = vol.Schema({
    vol.Required("uri"): cv.string,
})

AGGREGATE_SCHEMA = vol.Schema({
    vol.Optional("category"): cv.string,
})

VARIANT_SCHEMA = vol.Schema({
    vol.Required("variant"): cv.string,
})

TEST_RESULT_SCHEMA = vol.Schema({
    vol.Required("accuracy"): vol.Coerce(float),
    vol.Required("loss"): vol.Coerce(float),
    vol.Required("training_time_ms"): vol.All(vol.Coerce(int), vol.Range(min=0)),
    vol.Required("prediction_accuracy"): vol.Coerce(float),
})


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Setup of the component through config entry."""
    hass.data.setdefault(DOMAIN, {})

    _LOGGER.debug("Setting up Habit Coach with context entities: %s", dict(entry.data))

    # Initialize storage manager (SQLite + JSON)
    storage = StorageManager(hass)
    await storage.setup()

    # Initialize the real-time context collector
    collector = ContextFeatureCollector(hass, dict(entry.data))
    await collector.start()

    # Initialize the recommendation agent (AI)
    agent = ReinforcementLearningAgent(hass, storage)
    await agent.setup()

    ab_testing = ABTestingManager(storage)
    await ab_testing.setup()

    # Model sharing directories
    federated = FederatedLearningManager(hass, storage)
    await federated.setup()

    hass.data[DOMAIN]["storage"] = storage
    hass.data[DOMAIN]["collector"] = collector
    hass.data[DOMAIN]["agent"] = agent
    hass.data[DOMAIN]["anomaly_detector"] = AnomalyDetector()
    hass.data[DOMAIN]["optimizer"] = HyperparameterOptimizer()
    hass.data[DOMAIN]["compressor"] = ModelCompressor()
    hass.data[DOMAIN]["federated"] = federated
    hass.data[DOMAIN]["ab_testing"] = ab_testing

    # Platform setup
    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)

    await async_setup_services(hass)

    # Periodic recommendation refresh for the habit the agent currently holds
    async def refresh_recommendation(now):
        """Re-evaluate the recommended action with fresh context."""
        if agent.habit_id is None:
            return

        habit = await storage.get_habit(agent.habit_id)
        if habit is None:
            return

        await agent.async_update_state(habit, collector.snapshot())
        _LOGGER.debug("Recommendation refreshed for habit %s", habit.id)

    hass.data[DOMAIN]["update_listener"] = async_track_time_interval(
        hass, refresh_recommendation, timedelta(minutes=CONTEXT_REFRESH_MINUTES)
    )

    return True


async def _get_habit(hass: HomeAssistant, habit_id: str) -> Habit:
    habit = await hass.data[DOMAIN]["storage"].get_habit(habit_id)
    if habit is None:
        raise UnknownHabit(f"Unknown habit '{habit_id}'")
    return habit


async def _local_model(hass: HomeAssistant, habit: Habit) -> bytes:
    """Weights to share for a habit: its category model, or a fresh model for the current A/B architecture."""
    federated = hass.data[DOMAIN]["federated"]
    if habit.category:
        buffer = await federated.async_get_category_model(habit.category)
        if buffer is not None:
            return buffer

    architecture = hass.data[DOMAIN]["ab_testing"].get_current_architecture()
    return hass.data[DOMAIN]["compressor"].distill_model(b"", architecture, architecture)


async def async_setup_services(hass: HomeAssistant):
    """Setup services for habit tracking and model sharing."""

    async def save_habit(call: ServiceCall):
        """Service to create or update a habit."""
        storage = hass.data[DOMAIN]["storage"]
        habit = Habit(
            id=call.data["habit_id"],
            name=call.data["name"],
            frequency=HabitFrequency(call.data["frequency"]),
            streak=call.data["streak"],
            category=call.data.get("category"),
        )
        await storage.save_habit(habit)
        _LOGGER.info("Habit %s saved", habit.id)

    async def log_completion(call: ServiceCall):
        """Service to log a completion and retrain the agent on the habit's history."""
        storage = hass.data[DOMAIN]["storage"]
        agent = hass.data[DOMAIN]["agent"]
        habit = await _get_habit(hass, call.data["habit_id"])

        completed_at = call.data.get("completed_at")
        completion = HabitCompletion(
            id=str(uuid.uuid4()),
            habit_id=habit.id,
            completion_date=int(completed_at.timestamp() * 1000) if completed_at else now_ms(),
            mood=call.data.get("mood"),
        )
        await storage.log_completion(completion)

        completions = await storage.get_completions(habit.id)
        if agent.habit_id == habit.id and completions[-1].id == completion.id:
            # History already learned, only the transition into the new completion is missing
            await agent.async_initialize(habit, completions[-2:])
        else:
            # A backdated completion splits an already learned transition
            await agent.async_initialize(habit, completions, replay=True)

        _LOGGER.info("Completion logged for habit %s", habit.id)
        async_dispatcher_send(hass, HC_AI_UPDATE_SIGNAL)

    async def recommend(call: ServiceCall) -> ServiceResponse:
        """Service to get the recommended next action for a habit."""
        storage = hass.data[DOMAIN]["storage"]
        agent = hass.data[DOMAIN]["agent"]
        collector = hass.data[DOMAIN]["collector"]
        habit = await _get_habit(hass, call.data["habit_id"])

        if agent.habit_id != habit.id:
            await agent.async_initialize(habit, await storage.get_completions(habit.id))

        action = await agent.async_update_state(habit, collector.snapshot())
        return {
            "habit_id": habit.id,
            "action": action.action_type.value,
            "description": agent.get_action_description(action),
            "epsilon": agent.epsilon,
        }

    async def provide_feedback(call: ServiceCall) -> ServiceResponse:
        """Service to rate the last recommendation."""
        agent = hass.data[DOMAIN]["agent"]
        new_q = await agent.async_provide_feedback(call.data["reward"])
        async_dispatcher_send(hass, HC_AI_UPDATE_SIGNAL)
        return {"q_value": new_q}

    async def detect_anomalies(call: ServiceCall) -> ServiceResponse:
        """Service to scan a habit's completion log for unusual completions."""
        storage = hass.data[DOMAIN]["storage"]
        detector = hass.data[DOMAIN]["anomaly_detector"]
        habit = await _get_habit(hass, call.data["habit_id"])
        completions = await storage.get_completions(habit.id)

        anomalies = await hass.async_add_executor_job(detector.detect_anomalies, habit, completions, True)
        async_dispatcher_send(hass, HC_AI_UPDATE_SIGNAL)
        return {
            "anomalies": [
                {**a.as_dict(), "explanation": detector.get_anomaly_explanation(a)}
                for a in anomalies
            ]
        }

    async def export_model(call: ServiceCall) -> ServiceResponse:
        """Service to export the local model of a habit for sharing."""
        federated = hass.data[DOMAIN]["federated"]
        habit = await _get_habit(hass, call.data["habit_id"])
        buffer = await _local_model(hass, habit)
        uri = await federated.async_export_model(habit.id, habit.category, buffer)
        return {"uri": uri}

    async def import_model(call: ServiceCall) -> ServiceResponse:
        """Service to import a model shared by another device."""
        federated = hass.data[DOMAIN]["federated"]
        path = await federated.async_import_model(call.data["uri"])
        async_dispatcher_send(hass, HC_AI_UPDATE_SIGNAL)
        imported = await hass.async_add_executor_job(federated.get_imported_model_count)
        return {"path": str(path), "imported_models": imported}

    async def aggregate_models(call: ServiceCall) -> ServiceResponse:
        """Service to merge every imported model by federated averaging."""
        federated = hass.data[DOMAIN]["federated"]
        path = await federated.async_aggregate_models(call.data.get("category"))
        async_dispatcher_send(hass, HC_AI_UPDATE_SIGNAL)
        return {
            "aggregated": path is not None,
            "path": str(path) if path else None,
        }

    async def switch_variant(call: ServiceCall):
        """Service to move this installation to another A/B variant."""
        await hass.data[DOMAIN]["ab_testing"].switch_variant(call.data["variant"])
        async_dispatcher_send(hass, HC_AI_UPDATE_SIGNAL)

    async def record_test_result(call: ServiceCall):
        """Service to record an evaluation of the current A/B variant."""
        await hass.data[DOMAIN]["ab_testing"].record_test_result(
            accuracy=call.data["accuracy"],
            loss=call.data["loss"],
            training_time_ms=call.data["training_time_ms"],
            prediction_accuracy=call.data["prediction_accuracy"],
        )
        async_dispatcher_send(hass, HC_AI_UPDATE_SIGNAL)

    # Register services
    hass.services.async_register(DOMAIN, "save_habit", save_habit, schema=SAVE_HABIT_SCHEMA)
    hass.services.async_register(DOMAIN, "log_completion", log_completion, schema=LOG_COMPLETION_SCHEMA)
    hass.services.async_register(
        DOMAIN, "recommend", recommend, schema=HABIT_SCHEMA, supports_response=SupportsResponse.ONLY
    )
    hass.services.async_register(
        DOMAIN, "provide_feedback", provide_feedback, schema=FEEDBACK_SCHEMA, supports_response=SupportsResponse.OPTIONAL
    )
    hass.services.async_register(
        DOMAIN, "detect_anomalies", detect_anomalies, schema=HABIT_SCHEMA, supports_response=SupportsResponse.ONLY
    )
    hass.services.async_register(
        DOMAIN, "export_model", export_model, schema=HABIT_SCHEMA, supports_response=SupportsResponse.ONLY
    )
    hass.services.async_register(
        DOMAIN, "import_model", import_model, schema=IMPORT_SCHEMA, supports_response=SupportsResponse.OPTIONAL
    )
    hass.services.async_register(
        DOMAIN, "aggregate_models", aggregate_models, schema=AGGREGATE_SCHEMA, supports_response=SupportsResponse.OPTIONAL
    )
    hass.services.async_register(
        DOMAIN, "switch_variant", switch_variant, schema=VARIANT_SCHEMA
    )
    hass.services.async_register(DOMAIN, "record_test_result", record_test_result, schema=TEST_RESULT_SCHEMA)

    _LOGGER.info("Services registered successfully")


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload of the config entry."""
    # Unregister services
    for service in SERVICES:
        hass.services.async_remove(DOMAIN, service)

    if unload_ok := await hass.config_entries.async_unload_platforms(entry, PLATFORMS):
        hass.data[DOMAIN]["update_listener"]()

        await hass.data[DOMAIN]["collector"].stop()
        hass.data[DOMAIN]["optimizer"].request_stop()

        hass.data.pop(DOMAIN)
    return unload_ok
