"""
Shared test fixtures and configuration for FarmAssist backend tests.
"""
import os
import pytest

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DEBUG"] = "true"

from farmassist.services.tools.capabilities import SessionContext  # noqa: E402
from farmassist.services.tools.registry import ToolRegistry  # noqa: E402
from farmassist.services.tools.schema import (  # noqa: E402
    ToolCapability,
    ToolDefinition,
    ToolSchema,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def registry():
    """Registry with a small set of farm data tools."""
    registry = ToolRegistry()

    async def get_fields(session, **kwargs):
        return {
            "fields": [
                {"id": "f-1", "name": "North Forty", "area_ha": 16.2},
                {"id": "f-2", "name": "River Bottom", "area_ha": 8.5},
                {"id": "f-3", "name": "Hilltop", "area_ha": 12.0},
            ]
        }

    async def get_field_boundary(session, field_id, **kwargs):
        return {
            "field_id": field_id,
            "name": "North Forty",
            "boundary": {"coordinates": [[41.59, -93.62], [41.60, -93.61], [41.58, -93.60]]},
        }

    async def get_current_weather(session, lat, lon, **kwargs):
        return {"temperature_c": 18.5, "wind_kph": 12, "conditions": "Partly cloudy"}

    async def get_ndvi(session, lat, lon, **kwargs):
        return {"ndvi": 0.72, "captured": "2026-06-01"}

    async def get_market_prices(session, commodity, **kwargs):
        return {"commodity": commodity, "price_eur_per_ton": 215}

    registry.register_tool(
        ToolDefinition(
            tool_schema=ToolSchema(name="getFields", description="List the user's fields"),
            capability=ToolCapability.JOHN_DEERE,
        ),
        get_fields,
    )
    registry.register_tool(
        ToolDefinition(
            tool_schema=ToolSchema(
                name="get_field_boundary",
                description="Boundary coordinates of one field",
                parameters={
                    "type": "object",
                    "properties": {"field_id": {"type": "string", "description": "Field id"}},
                    "required": ["field_id"],
                },
            ),
            capability=ToolCapability.JOHN_DEERE,
        ),
        get_field_boundary,
    )
    registry.register_tool(
        ToolDefinition(
            tool_schema=ToolSchema(
                name="getCurrentWeather",
                description="Current weather at a location",
                parameters={
                    "type": "object",
                    "properties": {
                        "lat": {"type": "number", "description": "Latitude"},
                        "lon": {"type": "number", "description": "Longitude"},
                    },
                    "required": ["lat", "lon"],
                },
            ),
            capability=ToolCapability.WEATHER,
        ),
        get_current_weather,
    )
    registry.register_tool(
        ToolDefinition(
            tool_schema=ToolSchema(
                name="getNdvi",
                description="Latest NDVI at a location",
                parameters={
                    "type": "object",
                    "properties": {
                        "lat": {"type": "number", "description": "Latitude"},
                        "lon": {"type": "number", "description": "Longitude"},
                    },
                    "required": ["lat", "lon"],
                },
            ),
            capability=ToolCapability.SATSHOT,
        ),
        get_ndvi,
    )
    registry.register_tool(
        ToolDefinition(
            tool_schema=ToolSchema(
                name="getEUMarketPrices",
                description="EU market prices for a commodity",
                parameters={
                    "type": "object",
                    "properties": {
                        "commodity": {"type": "string", "description": "Commodity", "enum": ["wheat", "maize"]},
                    },
                    "required": ["commodity"],
                },
            ),
            capability=ToolCapability.EU_COMMISSION,
        ),
        get_market_prices,
    )
    return registry


@pytest.fixture
def session():
    """Session with every data source enabled."""
    return SessionContext(session_id="session-1", enabled_capabilities=frozenset(ToolCapability))


@pytest.fixture
def john_deere_session():
    """Session with only John Deere enabled."""
    return SessionContext(session_id="session-jd", enabled_capabilities=frozenset({ToolCapability.JOHN_DEERE}))


@pytest.fixture
def fake_clock():
    """Controllable epoch-millisecond clock."""
    class Clock:
        def __init__(self):
            self.now = 1_700_000_000_000.0

        def __call__(self) -> float:
            return self.now

        def advance(self, ms: float) -> None:
            self.now += ms

    return Clock()
