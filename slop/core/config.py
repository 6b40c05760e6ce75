from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from slop.core.errors import UnsupportedProviderError


class ToolProperty(BaseModel):
    type: str = "string"
    description: str = ""
    enum: list[str] = Field(default_factory=list)
    items: Optional["ToolProperty"] = None  # array types
    properties: dict[str, "ToolProperty"] = Field(default_factory=dict)  # object types
    required: list[str] = Field(default_factory=list)
    default: Any = None

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum:
            schema["enum"] = self.enum
        if self.default is not None:
            schema["default"] = self.default
        if self.type == "array" and self.items is not None:
            schema["items"] = self.items.to_schema()
        if self.type == "object" and self.properties:
            schema["properties"] = {name: p.to_schema() for name, p in self.properties.items()}
            if self.required:
                schema["required"] = self.required
        return schema


class ToolParameters(BaseModel):
    type: str = "object"
    properties: dict[str, ToolProperty] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)

    def to_schema(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "properties": {name: p.to_schema() for name, p in self.properties.items()},
            "required": self.required,
        }


class ToolConfig(BaseModel):
    description: str = ""
    parameters: ToolParameters = Field(default_factory=ToolParameters)


class ModelPreset(BaseModel):
    provider: str  # googleai | gemini | openai | anthropic
    name: str
    max_tokens: int = 1000
    temperature: float = 0.7
    tools: dict[str, ToolConfig] = Field(default_factory=dict)


class McpServerConfig(BaseModel):
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


_WEATHER_TOOL = ToolConfig(
    description="Get the current weather in a given location",
    parameters=ToolParameters(
        properties={
            "location": ToolProperty(description="The city and state, e.g. San Francisco, CA"),
            "unit": ToolProperty(enum=["fahrenheit", "celsius"]),
        },
        required=["location", "unit"],
    ),
)

_ESSAY_TOOL = ToolConfig(
    description="Write an essay",
    parameters=ToolParameters(
        properties={
            "content": ToolProperty(description="short essay content"),
            "name": ToolProperty(description="essay name"),
        },
    ),
)


def _default_models() -> dict[str, ModelPreset]:
    return {
        "gemini": ModelPreset(
            provider="googleai",
            name="gemini-2.0-flash",
            tools={"getCurrentWeather": _WEATHER_TOOL, "essay": _ESSAY_TOOL},
        ),
        "openai": ModelPreset(provider="openai", name="gpt-4o", tools={"getCurrentWeather": _WEATHER_TOOL}),
        "claude": ModelPreset(
            provider="anthropic", name="claude-3-5-haiku-latest", tools={"getCurrentWeather": _WEATHER_TOOL}
        ),
    }


class Settings(BaseSettings):
    app_name: str = "slop"
    debug: bool = False

    # Paths
    db_path: Path = Path(__file__).resolve().parent.parent.parent / "slop.db"

    # LLM
    models: dict[str, ModelPreset] = Field(default_factory=_default_models)
    active_model: str = "claude"
    internal_model: str = "openai"  # used for thread summaries
    summary_prompt: str = (
        "Please provide a brief, concise summary of the following conversation. "
        "Focus on the main topics discussed and key points. "
        "The purpose is to quickly identify a conversation in a list. "
        "Summary should be less than 8 words long."
    )
    gemini_api_key: str = ""
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Orchestration
    max_tool_cycles: int = 5
    provider_max_retries: int = 2
    provider_retry_backoff: float = 1.0  # seconds, doubled per attempt

    # MCP tool servers
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    mcp_timeout: float = 30.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_prefix": "SLOP_",
        "env_nested_delimiter": "__",
    }

    def get_model(self, name: str | None = None) -> ModelPreset:
        """Return the named model preset, or the active one."""
        key = name or self.active_model
        try:
            return self.models[key]
        except KeyError:
            raise UnsupportedProviderError(f"Unknown model preset: {key}") from None


settings = Settings()
