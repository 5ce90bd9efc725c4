"""parley: streaming protocol engine for OpenAI, Claude and Gemini chat APIs."""

from parley.config import EngineConfig, load_config
from parley.core.context import EngineContext
from parley.stream.factory import create_parser
from parley.types import ProviderFormat, RequestState, ToolCall, Turn

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "EngineContext",
    "ProviderFormat",
    "RequestState",
    "ToolCall",
    "Turn",
    "create_parser",
    "load_config",
]
