import httpx
from typing import Any, Dict
import logging

logger = logging.getLogger(__name__)

OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"

# OpenAI-style function declarations offered to the model when tools are enabled
TOOL_DECLARATIONS = [
    {
        "type": "function",
        "function": {
            "name": "getWeather",
            "description": "Get the current weather at a location",
            "parameters": {
                "type": "object",
                "properties": {
                    "latitude": {"type": "number"},
                    "longitude": {"type": "number"},
                },
                "required": ["latitude", "longitude"],
            },
        },
    },
]


async def get_weather(latitude: float, longitude: float) -> Dict[str, Any]:
    params = {
        "latitude": latitude,
        "longitude": longitude,
        "current": "temperature_2m",
        "hourly": "temperature_2m",
        "daily": "sunrise,sunset",
        "timezone": "auto",
    }
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(OPEN_METEO_URL, params=params)
        response.raise_for_status()
        return response.json()


async def execute_tool(name: str, args: Dict[str, Any]) -> Any:
    """
    Run a tool call requested by the model.

    Tool failures are returned to the model as an error result rather than
    aborting the generation.
    """
    if name != "getWeather":
        logger.warning(f"Model requested unknown tool {name}")
        return {"error": f"Unknown tool: {name}"}

    try:
        return await get_weather(float(args["latitude"]), float(args["longitude"]))
    except (KeyError, TypeError, ValueError) as e:
        return {"error": f"Invalid arguments for {name}: {e}"}
    except httpx.HTTPError as e:
        logger.error(f"Weather lookup failed: {e}")
        return {"error": "Weather service unavailable"}
