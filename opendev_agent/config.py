"""Configuration management for OpenDev Agent."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.opendev-agent/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.opendev-agent/executions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model provider configuration."""

    provider: str = "openai_compatible"
    model: str = "gpt-4"
    base_url: str = "http://127.0.0.1:1234/v1"
    api_key: str = ""
    temperature: float = 0.2
    max_tokens: int = 4096
    # Transport ceiling only; the sandbox time budget is the execution cutoff.
    request_timeout: float = 600.0


class SandboxConfig(BaseModel):
    """Default sandbox limits applied when a project stores none."""

    max_execution_time_seconds: int = 300
    max_tokens: int = 100000
    max_file_operations: int = 50
    max_commands: int = 10
    max_file_size_bytes: int = 1048576
    max_steps: int = 20


class CommandToolConfig(BaseModel):
    """Command tool configuration."""

    timeout: int = 120
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]
    max_output_chars: int = 20000


class ToolsConfig(BaseModel):
    """Tools configuration."""

    require_approval: dict[str, bool] = Field(
        default_factory=lambda: {
            "readFile": False,
            "listDirectory": False,
            "writeFile": True,
            "editFile": True,
            "deleteFile": True,
            "executeCommand": True,
            "completeTask": True,
        }
    )
    command: CommandToolConfig = Field(default_factory=CommandToolConfig)
    max_read_bytes: int = 1048576


class StoreConfig(BaseModel):
    """Execution log storage configuration."""

    path: str = str(DEFAULT_DB_PATH)


class WebConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8340


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for OpenDev Agent."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="OPENDEV_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; pydantic-settings layers env vars on top."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
