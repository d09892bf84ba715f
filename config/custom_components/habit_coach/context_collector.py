"""
File: context_collector.py
Description: This module defines the ContextFeatureCollector class, which turns the state of the user's phone and surroundings
into a 10-slot feature vector in [0, 1] for the recommendation agent.
Sensor slots (light, temperature, activity, location, battery) are overwritten as soon as their Home Assistant entity changes.
Clock-derived slots (time of day, day of week, device usage, and battery when no battery entity is configured)
are computed on start and refreshed periodically. A slot without a source simply stays at 0.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from homeassistant.core import HomeAssistant, Event, callback
from homeassistant.helpers.dispatcher import async_dispatcher_send
from homeassistant.helpers.event import async_track_state_change_event, async_track_time_interval
from homeassistant.util.location import distance

from .const import (
    HC_UPDATE_SIGNAL,
    NUM_FEATURES,
    FEATURE_NAMES,
    FEATURE_TIME_OF_DAY,
    FEATURE_DAY_OF_WEEK,
    FEATURE_ACTIVITY_LEVEL,
    FEATURE_LIGHT_LEVEL,
    FEATURE_TEMPERATURE,
    FEATURE_WEATHER,
    FEATURE_LOCATION_HOME,
    FEATURE_LOCATION_WORK,
    FEATURE_BATTERY_LEVEL,
    FEATURE_DEVICE_USAGE,
    CONF_LIGHT_SENSOR,
    CONF_TEMPERATURE_SENSOR,
    CONF_ACCELEROMETER_SENSOR,
    CONF_BATTERY_SENSOR,
    CONF_LOCATION_TRACKER,
    CONF_WORK_ZONE,
    CONTEXT_REFRESH_MINUTES,
    MAX_LIGHT_LUX,
    TEMPERATURE_OFFSET_C,
    TEMPERATURE_RANGE_C,
    MAX_ACCELERATION,
    PROXIMITY_RADIUS_M,
    DEVICE_USAGE_JITTER,
    BATTERY_ESTIMATE_JITTER,
)
from .errors import SensorUnavailable
from .helpers import (
    clamp,
    get_state_float,
    get_temperature_celsius,
    get_acceleration_magnitude,
    get_coordinates,
    get_weather_score,
    get_device_usage_level,
)

_LOGGER = logging.getLogger(__name__)


def proximity(current: Tuple[float, float], reference: Tuple[float, float]) -> float:
    """1 at the reference point, falling linearly to 0 at PROXIMITY_RADIUS_M and beyond."""
    meters = distance(current[0], current[1], reference[0], reference[1])
    if meters is None:
        return 0.0
    return 1.0 - clamp(meters / PROXIMITY_RADIUS_M)


class ContextFeatureCollector:
    """
    Real-time context sensing.
    Every start() must be matched by a stop(), which removes all listeners registered by that start.
    """

    def __init__(
        self,
        hass: HomeAssistant,
        config_data: dict,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.hass = hass
        self.config_data = config_data or {}
        self._rng = rng or random.Random()
        self._clock = clock

        self.light_sensor = self.config_data.get(CONF_LIGHT_SENSOR)
        self.temperature_sensor = self.config_data.get(CONF_TEMPERATURE_SENSOR)
        self.accelerometer_sensor = self.config_data.get(CONF_ACCELEROMETER_SENSOR)
        self.battery_sensor = self.config_data.get(CONF_BATTERY_SENSOR)
        self.location_tracker = self.config_data.get(CONF_LOCATION_TRACKER)
        self.work_zone = self.config_data.get(CONF_WORK_ZONE)

        self.features: List[float] = [0.0] * NUM_FEATURES

        self.home_location: Optional[Tuple[float, float]] = None
        self.work_location: Optional[Tuple[float, float]] = None
        self.current_location: Optional[Tuple[float, float]] = None

        self._unsub_listeners: List[Callable[[], None]] = []

    @property
    def is_running(self) -> bool:
        return bool(self._unsub_listeners)

    # ==================== LIFECYCLE ====================

    async def start(self):
        """Start listening to the configured entities."""
        if self.is_running:
            _LOGGER.debug("Context collection already running")
            return

        if self.home_location is None and self.hass.config.latitude is not None:
            self.home_location = (self.hass.config.latitude, self.hass.config.longitude)

        if self.work_zone and self.work_location is None:
            self.work_location = get_coordinates(self.hass.states.get(self.work_zone))

        self._refresh_clock_features()

        handlers: Dict[str, Callable[[Event], None]] = {}
        if self.light_sensor:
            handlers[self.light_sensor] = self._light_changed
        if self.temperature_sensor:
            handlers[self.temperature_sensor] = self._temperature_changed
        if self.accelerometer_sensor:
            handlers[self.accelerometer_sensor] = self._accelerometer_changed
        if self.battery_sensor:
            handlers[self.battery_sensor] = self._battery_changed
        if self.location_tracker:
            handlers[self.location_tracker] = self._location_changed

        for entity_id, handler in handlers.items():
            # Apply the current state straight away, then follow changes
            self._apply(handler, self.hass.states.get(entity_id))
            self._unsub_listeners.append(
                async_track_state_change_event(self.hass, [entity_id], self._dispatch(handler))
            )

        self._unsub_listeners.append(
            async_track_time_interval(
                self.hass, self._periodic_refresh, timedelta(minutes=CONTEXT_REFRESH_MINUTES)
            )
        )

        _LOGGER.info("Context collection started for %d entities", len(handlers))

    async def stop(self):
        """Remove every listener registered by start()."""
        for unsub in self._unsub_listeners:
            unsub()
        count = len(self._unsub_listeners)
        self._unsub_listeners = []
        _LOGGER.info("Context collection stopped (%d listeners removed)", count)

    def _dispatch(self, handler):
        @callback
        def _state_changed(event: Event):
            self._apply(handler, event.data.get("new_state"))
            async_dispatcher_send(self.hass, HC_UPDATE_SIGNAL)
        return _state_changed

    @staticmethod
    def _apply(handler, state):
        if state is None:
            return
        handler(state)

    @callback
    def _periodic_refresh(self, now):
        self._refresh_clock_features()
        async_dispatcher_send(self.hass, HC_UPDATE_SIGNAL)

    # ==================== SENSOR SLOTS ====================

    def _light_changed(self, state):
        lux = get_state_float(state)
        if lux is not None:
            self.features[FEATURE_LIGHT_LEVEL] = clamp(lux / MAX_LIGHT_LUX)

    def _temperature_changed(self, state):
        celsius = get_temperature_celsius(state)
        if celsius is None:
            return
        self.features[FEATURE_TEMPERATURE] = clamp((celsius + TEMPERATURE_OFFSET_C) / TEMPERATURE_RANGE_C)
        self.features[FEATURE_WEATHER] = get_weather_score(self._clock().month, celsius)

    def _accelerometer_changed(self, state):
        magnitude = get_acceleration_magnitude(state)
        if magnitude is not None:
            self.features[FEATURE_ACTIVITY_LEVEL] = clamp(magnitude / MAX_ACCELERATION)

    def _battery_changed(self, state):
        percent = get_state_float(state)
        if percent is not None:
            self.features[FEATURE_BATTERY_LEVEL] = clamp(percent / 100.0)

    def _location_changed(self, state):
        coordinates = get_coordinates(state)
        if coordinates is None:
            return
        self.current_location = coordinates
        self._update_location_features()

    def _update_location_features(self):
        if self.current_location is None:
            return
        if self.home_location is not None:
            self.features[FEATURE_LOCATION_HOME] = proximity(self.current_location, self.home_location)
        if self.work_location is not None:
            self.features[FEATURE_LOCATION_WORK] = proximity(self.current_location, self.work_location)

    def set_home_location(self, latitude: float, longitude: float):
        self.home_location = (latitude, longitude)
        self._update_location_features()

    def set_work_location(self, latitude: float, longitude: float):
        self.work_location = (latitude, longitude)
        self._update_location_features()

    # ==================== CLOCK SLOTS ====================

    def _refresh_clock_features(self):
        now = self._clock()
        self.features[FEATURE_TIME_OF_DAY] = (now.hour + now.minute / 60.0) / 24.0
        self.features[FEATURE_DAY_OF_WEEK] = now.weekday() / 6.0

        usage = get_device_usage_level(now.hour) + (self._rng.random() - 0.5) * 2 * DEVICE_USAGE_JITTER
        self.features[FEATURE_DEVICE_USAGE] = clamp(usage)

        if not self.battery_sensor:
            # No battery entity: estimate a linear drain over the day
            battery = 1.0 - now.hour / 24.0 + (self._rng.random() - 0.5) * 2 * BATTERY_ESTIMATE_JITTER
            self.features[FEATURE_BATTERY_LEVEL] = clamp(battery)

    # ==================== ACCESS ====================

    def snapshot(self) -> Tuple[float, ...]:
        """Immutable copy of the current feature vector."""
        return tuple(self.features)

    def _has_source(self, slot: int) -> bool:
        if slot in (FEATURE_TIME_OF_DAY, FEATURE_DAY_OF_WEEK, FEATURE_DEVICE_USAGE, FEATURE_BATTERY_LEVEL):
            return True
        if slot == FEATURE_LIGHT_LEVEL:
            return bool(self.light_sensor)
        if slot in (FEATURE_TEMPERATURE, FEATURE_WEATHER):
            return bool(self.temperature_sensor)
        if slot == FEATURE_ACTIVITY_LEVEL:
            return bool(self.accelerometer_sensor)
        if slot == FEATURE_LOCATION_HOME:
            return bool(self.location_tracker) and self.home_location is not None
        if slot == FEATURE_LOCATION_WORK:
            return bool(self.location_tracker) and self.work_location is not None
        return False

    def get_feature(self, slot: int) -> float:
        """
        Value of a single slot.

        Raises:
            SensorUnavailable: if nothing feeds this slot
        """
        if not 0 <= slot < NUM_FEATURES:
            raise IndexError(f"Feature slot {slot} out of range")
        if not self._has_source(slot):
            raise SensorUnavailable(f"No source configured for feature '{FEATURE_NAMES[slot]}'")
        return self.features[slot]

    def get_feature_dict(self) -> Dict[str, float]:
        return dict(zip(FEATURE_NAMES, self.features))
