"""API data models."""

from .requests import ExecuteBotRequest
from .responses import BotInfo, BotListResponse, ExecuteBotResponse, HealthResponse

__all__ = [
    # Request models
    "ExecuteBotRequest",
    # Response models
    "BotInfo",
    "BotListResponse",
    "ExecuteBotResponse",
    "HealthResponse",
]
