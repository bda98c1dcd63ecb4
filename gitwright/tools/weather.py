"""Demo tools: a confirmation-gated weather lookup and an automatic local-time lookup."""

from pydantic import BaseModel, Field

from gitwright.logging import get_logger
from gitwright.tools.registry import Tool, ToolContext

log = get_logger(__name__)


class WeatherArgs(BaseModel):
    city: str = Field(description="City to show the weather for")


class GetWeatherInformationTool(Tool):
    """Show the weather in a city. Runs only after the user confirms."""

    name = "getWeatherInformation"
    description = "show the weather in a given city to the user"
    args_model = WeatherArgs
    requires_confirmation = True


async def get_weather_information(args: WeatherArgs, ctx: ToolContext) -> str:
    """Confirmation executor for :class:`GetWeatherInformationTool`."""
    log.info("Getting weather information", city=args.city)
    return f"The weather in {args.city} is sunny"


class LocalTimeArgs(BaseModel):
    location: str = Field(description="Location to get the local time for")


class GetLocalTimeTool(Tool):
    name = "getLocalTime"
    description = "get the local time for a specified location"
    args_model = LocalTimeArgs

    async def execute(self, args: LocalTimeArgs, ctx: ToolContext) -> str:
        log.info("Getting local time", location=args.location)
        return "10am"
