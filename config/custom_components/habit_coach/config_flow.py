import logging
import voluptuous as vol
from homeassistant import config_entries
from homeassistant.helpers.selector import (
    EntitySelector,
    EntitySelectorConfig,
)

from .helpers import get_coordinates
from .const import (
    DOMAIN,
    CONF_LIGHT_SENSOR,
    CONF_TEMPERATURE_SENSOR,
    CONF_ACCELEROMETER_SENSOR,
    CONF_BATTERY_SENSOR,
    CONF_LOCATION_TRACKER,
    CONF_WORK_ZONE,
)

_LOGGER = logging.getLogger(__name__)


class HabitCoachConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Config flow for Habit Coach integration."""

    VERSION = 1

    def __init__(self):
        """Initialize flow storage."""
        self.data = {}

    async def async_step_user(self, user_input=None):
        """Step 1: Context sensors of the phone that carries the habits."""
        await self.async_set_unique_id(DOMAIN)
        self._abort_if_unique_id_configured()

        if user_input is not None:
            self.data.update(user_input)
            return await self.async_step_locations()

        data_schema = vol.Schema({
            vol.Optional(CONF_LIGHT_SENSOR): EntitySelector(
                EntitySelectorConfig(domain="sensor", device_class="illuminance")
            ),
            vol.Optional(CONF_TEMPERATURE_SENSOR): EntitySelector(
                EntitySelectorConfig(domain="sensor", device_class="temperature")
            ),
            vol.Optional(CONF_ACCELEROMETER_SENSOR): EntitySelector(
                EntitySelectorConfig(domain="sensor")
            ),
            vol.Optional(CONF_BATTERY_SENSOR): EntitySelector(
                EntitySelectorConfig(domain="sensor", device_class="battery")
            ),
        })

        return self.async_show_form(
            step_id="user",
            data_schema=data_schema,
            last_step=False,
        )

    async def async_step_locations(self, user_input=None):
        """Step 2: Location tracker and work zone."""
        errors = {}

        if user_input is not None:
            work_zone = user_input.get(CONF_WORK_ZONE)
            if work_zone and get_coordinates(self.hass.states.get(work_zone)) is None:
                errors[CONF_WORK_ZONE] = "zone_without_location"
            elif work_zone and not user_input.get(CONF_LOCATION_TRACKER):
                errors[CONF_LOCATION_TRACKER] = "tracker_required"
            else:
                self.data.update(user_input)
                _LOGGER.debug("Habit Coach configured with: %s", self.data)
                return self.async_create_entry(title="Habit Coach", data=self.data)

        data_schema = vol.Schema({
            vol.Optional(CONF_LOCATION_TRACKER): EntitySelector(
                EntitySelectorConfig(domain=["device_tracker", "person"])
            ),
            vol.Optional(CONF_WORK_ZONE): EntitySelector(
                EntitySelectorConfig(domain="zone")
            ),
        })

        return self.async_show_form(
            step_id="locations",
            data_schema=data_schema,
            errors=errors,
            last_step=True,
        )
