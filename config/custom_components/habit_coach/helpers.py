import math
from typing import Optional, Tuple

from homeassistant.const import STATE_UNAVAILABLE, STATE_UNKNOWN, UnitOfTemperature

from .const import (
    SEASON_FACTORS,
    TEMPERATURE_FACTORS,
    DEVICE_USAGE_BY_HOUR,
    WEATHER_SEASON_WEIGHT,
    WEATHER_TEMPERATURE_WEIGHT,
)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def get_state_float(state) -> Optional[float]:
    """Numeric value of a state object, None if missing or not numeric."""
    if state is None or state.state in (STATE_UNKNOWN, STATE_UNAVAILABLE):
        return None
    try:
        value = float(state.state)
    except (ValueError, TypeError):
        return None
    if math.isnan(value):
        return None
    return value


def get_temperature_celsius(state) -> Optional[float]:
    """
    Helper to convert temperature sensor values to °C.
    °F and K states are converted, anything else is assumed to be °C.
    """
    value = get_state_float(state)
    if value is None:
        return None

    unit = state.attributes.get("unit_of_measurement")
    if unit == UnitOfTemperature.FAHRENHEIT:
        return (value - 32.0) * 5.0 / 9.0
    if unit == UnitOfTemperature.KELVIN:
        return value - 273.15
    return value


def get_acceleration_magnitude(state) -> Optional[float]:
    """
    Acceleration magnitude in m/s².

    Uses the x/y/z attributes when the sensor exposes them, otherwise the numeric state.
    """
    if state is None:
        return None

    axes = [state.attributes.get(axis) for axis in ("x", "y", "z")]
    if all(axis is not None for axis in axes):
        try:
            return math.sqrt(sum(float(a) ** 2 for a in axes))
        except (ValueError, TypeError):
            return None

    value = get_state_float(state)
    return abs(value) if value is not None else None


def get_coordinates(state) -> Optional[Tuple[float, float]]:
    """(latitude, longitude) of a tracker, person or zone state."""
    if state is None:
        return None
    latitude = state.attributes.get("latitude")
    longitude = state.attributes.get("longitude")
    if latitude is None or longitude is None:
        return None
    try:
        return float(latitude), float(longitude)
    except (ValueError, TypeError):
        return None


def get_season(month: int) -> str:
    """Northern hemisphere meteorological season for a month (1-12)."""
    if month in (3, 4, 5):
        return "spring"
    if month in (6, 7, 8):
        return "summer"
    if month in (9, 10, 11):
        return "fall"
    return "winter"


def get_temperature_factor(celsius: float) -> float:
    """How pleasant a temperature is for outdoor activity."""
    for limit, factor in TEMPERATURE_FACTORS:
        if limit is None or celsius < limit:
            return factor
    return TEMPERATURE_FACTORS[-1][1]


def get_weather_score(month: int, celsius: float) -> float:
    season = SEASON_FACTORS[get_season(month)]
    return clamp(WEATHER_SEASON_WEIGHT * season + WEATHER_TEMPERATURE_WEIGHT * get_temperature_factor(celsius))


def get_device_usage_level(hour: int) -> float:
    """Typical phone usage for an hour of the day."""
    for limit, level in DEVICE_USAGE_BY_HOUR:
        if limit is None or hour < limit:
            return level
    return DEVICE_USAGE_BY_HOUR[-1][1]
