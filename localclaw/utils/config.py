"""
Configuration Management
========================

Centralized configuration for the gateway. Values come from three layers,
later layers winning:

1. Built-in defaults (a local Ollama, every tool enabled, no channels)
2. A JSON file: $LOCALCLAW_CONFIG, ./localclaw.json or
   ~/.localclaw/localclaw.json, whichever exists first
3. Environment variables (a .env file is loaded first)

The JSON file is the only place channels can be declared, because each one
carries a nested options block:

    {
      "llm": {"model": "qwen2.5:7b"},
      "tools": {"bash": {"deniedCommands": ["rm", "shutdown"]}},
      "channels": [
        {"type": "whatsapp", "name": "personal",
         "config": {"bridgeUrl": "ws://localhost:3010",
                    "replyOnlyToDirectMessages": true}}
      ]
    }

Usage:
    from localclaw.utils.config import get_config

    config = get_config()
    print(config.llm.base_url)
    print(config.tools.bash.timeout_seconds)
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from localclaw.utils.logger import Logger

logger = Logger("Config")


class ConfigError(ValueError):
    """Raised when a configuration value has the wrong shape."""


def _optional(name: str, default: str) -> str:
    """
    Get an optional environment variable with a default.

    Args:
        name: The environment variable name
        default: Default value if not set

    Returns:
        The value or the default
    """
    value = os.getenv(name)
    return value if value else default


def _optional_int(name: str, default: int) -> int:
    """
    Get an optional integer environment variable.

    Invalid values are reported and replaced with the default.
    """
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"{name} is not a valid integer, using default: {default}")
        return default


def _optional_float(name: str, default: float) -> float:
    """Get an optional float environment variable."""
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"{name} is not a valid number, using default: {default}")
        return default


def _optional_bool(name: str, default: bool) -> bool:
    """True if the variable is 'true', '1' or 'yes' (case-insensitive)."""
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("true", "1", "yes")


# ==============================================================================
# Configuration Dataclasses
# ==============================================================================

@dataclass(frozen=True)
class GatewayConfig:
    """HTTP front door."""
    host: str           # Interface to bind
    port: int           # TCP port
    auth_token: str     # Bearer token for /api/*, empty disables auth


@dataclass(frozen=True)
class LLMConfig:
    """OpenAI-compatible chat-completion endpoint."""
    provider: str           # "ollama" or anything OpenAI-compatible
    base_url: str           # e.g. http://localhost:11434/v1
    model: str
    temperature: float
    max_tokens: int
    api_key: str | None
    timeout_seconds: float  # Per-request abort


@dataclass(frozen=True)
class ShellToolConfig:
    """The bash tool."""
    enabled: bool
    timeout_seconds: float
    allowed_commands: tuple[str, ...] = ()
    denied_commands: tuple[str, ...] = ()
    max_output_chars: int = 100_000
    workdir: Path | None = None     # Defaults to the workspace


@dataclass(frozen=True)
class FileToolConfig:
    """read_file / write_file / list_directory / delete_file."""
    enabled: bool


@dataclass(frozen=True)
class BrowserToolConfig:
    """Headless browsing."""
    enabled: bool
    headless: bool
    timeout_seconds: float


@dataclass(frozen=True)
class CodeAgentToolConfig:
    """Remote coding agent reached over ssh."""
    enabled: bool
    timeout_seconds: float
    host_user: str
    host_ip: str | None         # Detected from the default route when None
    key_dir: Path
    agent_command: str          # Run on the host with the prompt appended


@dataclass(frozen=True)
class ToolsConfig:
    bash: ShellToolConfig
    file: FileToolConfig
    browser: BrowserToolConfig
    code_agent: CodeAgentToolConfig


@dataclass(frozen=True)
class MemoryConfig:
    """Persistent key-value memory."""
    enabled: bool
    directory: Path


@dataclass(frozen=True)
class ChannelConfig:
    """One messaging integration."""
    type: str
    name: str
    auto_start: bool = True
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Config:
    """
    Root configuration object.

    Access via:
        config = get_config()
        config.llm.model
        config.tools.browser.headless
        config.channels[0].options["bridgeUrl"]
    """
    gateway: GatewayConfig
    llm: LLMConfig
    tools: ToolsConfig
    memory: MemoryConfig
    channels: tuple[ChannelConfig, ...]
    home_dir: Path          # Config, memory, auth state, ssh key
    workspace_dir: Path     # Root for relative tool paths
    host_user: str
    host_home: str
    log_level: str
    source_path: Path | None = None


# ==============================================================================
# JSON file helpers
# ==============================================================================

def config_search_paths() -> list[Path]:
    """Candidate config file locations, in priority order."""
    paths = []
    explicit = os.getenv("LOCALCLAW_CONFIG")
    if explicit:
        paths.append(Path(explicit).expanduser())
    paths.append(Path.cwd() / "localclaw.json")
    paths.append(Path.home() / ".localclaw" / "localclaw.json")
    return paths


def _read_config_file(paths: list[Path]) -> tuple[dict, Path | None]:
    """
    Load the first parseable JSON object among the candidate paths.

    Files that exist but fail to parse are reported and skipped.
    """
    for path in paths:
        if not path.exists():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to parse config at {path}: {e}")
            continue
        if not isinstance(data, dict):
            logger.warning(f"Ignoring config at {path}: top level is not an object")
            continue
        logger.info(f"Loaded config from {path}")
        return data, path
    return {}, None


def _section(data: dict, *keys: str) -> dict:
    """Walk nested objects, returning {} for anything missing."""
    current: Any = data
    for depth, key in enumerate(keys, start=1):
        current = current.get(key, {})
        if not isinstance(current, dict):
            raise ConfigError(f"Config section '{'.'.join(keys[:depth])}' must be an object")
    return current


def _value(section: dict, key: str, kind: type | tuple, default: Any) -> Any:
    """Read a typed value from a section, enforcing the expected type."""
    if key not in section or section[key] is None:
        return default
    value = section[key]
    # bool is a subclass of int; don't let true/false pass as numbers
    if isinstance(value, bool) and kind is not bool:
        raise ConfigError(f"Config value '{key}' must be {_kind_name(kind)}, got a boolean")
    if kind is float and isinstance(value, int):
        return float(value)
    if not isinstance(value, kind):
        raise ConfigError(f"Config value '{key}' must be {_kind_name(kind)}")
    return value


def _kind_name(kind: type | tuple) -> str:
    if isinstance(kind, tuple):
        return " or ".join(k.__name__ for k in kind)
    return kind.__name__


def _string_list(section: dict, key: str) -> tuple[str, ...]:
    value = _value(section, key, list, [])
    if not all(isinstance(item, str) for item in value):
        raise ConfigError(f"Config value '{key}' must be a list of strings")
    return tuple(value)


def _parse_channels(data: dict) -> tuple[ChannelConfig, ...]:
    raw = data.get("channels", [])
    if not isinstance(raw, list):
        raise ConfigError("Config value 'channels' must be a list")

    channels = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict) or not isinstance(entry.get("type"), str):
            raise ConfigError(f"Channel #{index} must be an object with a 'type'")
        options = entry.get("config", {})
        if not isinstance(options, dict):
            raise ConfigError(f"Channel #{index} 'config' must be an object")
        channels.append(ChannelConfig(
            type=entry["type"],
            name=entry.get("name") or entry["type"],
            auto_start=entry.get("autoStart", True) is not False,
            options=options,
        ))
    return tuple(channels)


def load_config(config_path: Path | None = None) -> Config:
    """
    Load and validate all configuration.

    Args:
        config_path: Explicit JSON file; when omitted the search paths are used

    Returns:
        Config: The validated configuration

    Raises:
        ConfigError: If a value in the config file has the wrong type
    """
    load_dotenv()

    paths = [config_path] if config_path else config_search_paths()
    data, source = _read_config_file(paths)

    home_dir = Path(_optional("LOCALCLAW_HOME", str(Path.home() / ".localclaw"))).expanduser()
    workspace_dir = Path(
        _value(data, "workspaceDir", str, str(home_dir / "workspace"))
    ).expanduser()
    host_user = _optional("HOST_USER", os.getenv("USER") or "user")
    host_home = _optional("HOST_HOME_DIR", f"/home/{host_user}")

    gateway = _section(data, "gateway")
    llm = _section(data, "llm")
    bash = _section(data, "tools", "bash")
    browser = _section(data, "tools", "browser")
    files = _section(data, "tools", "file")
    code_agent = _section(data, "tools", "codeAgent")
    memory = _section(data, "memory")

    bash_workdir = _value(bash, "workdir", str, None)

    return Config(
        gateway=GatewayConfig(
            host=_optional("LOCALCLAW_GATEWAY_HOST", _value(gateway, "host", str, "0.0.0.0")),
            port=_optional_int("LOCALCLAW_GATEWAY_PORT", _value(gateway, "port", int, 18789)),
            auth_token=_optional(
                "LOCALCLAW_GATEWAY_TOKEN",
                _value(_section(gateway, "auth"), "token", str, ""),
            ),
        ),
        llm=LLMConfig(
            provider=_optional("LLM_PROVIDER", _value(llm, "provider", str, "ollama")),
            base_url=_optional(
                "LLM_BASE_URL",
                _optional("OLLAMA_BASE_URL", _value(llm, "baseURL", str, "http://localhost:11434/v1")),
            ).rstrip("/"),
            model=_optional(
                "LLM_MODEL",
                _optional("OLLAMA_MODEL", _value(llm, "model", str, "llama3.2:3b")),
            ),
            temperature=_value(llm, "temperature", float, 0.7),
            max_tokens=_value(llm, "maxTokens", int, 4096),
            api_key=os.getenv("LLM_API_KEY") or _value(llm, "apiKey", str, None),
            timeout_seconds=_optional_float(
                "LLM_TIMEOUT_SECONDS", _value(llm, "timeoutSeconds", float, 120.0)
            ),
        ),
        tools=ToolsConfig(
            bash=ShellToolConfig(
                enabled=_value(bash, "enabled", bool, True),
                timeout_seconds=_value(bash, "timeoutSeconds", float, 30.0),
                allowed_commands=_string_list(bash, "allowedCommands"),
                denied_commands=_string_list(bash, "deniedCommands"),
                max_output_chars=_value(bash, "maxOutputChars", int, 100_000),
                workdir=Path(bash_workdir).expanduser() if bash_workdir else None,
            ),
            file=FileToolConfig(enabled=_value(files, "enabled", bool, True)),
            browser=BrowserToolConfig(
                enabled=_value(browser, "enabled", bool, True),
                headless=_value(browser, "headless", bool, True),
                timeout_seconds=_value(browser, "timeoutSeconds", float, 30.0),
            ),
            code_agent=CodeAgentToolConfig(
                enabled=_value(code_agent, "enabled", bool, False),
                timeout_seconds=_value(code_agent, "timeoutSeconds", float, 300.0),
                host_user=host_user,
                host_ip=os.getenv("HOST_IP") or _value(code_agent, "hostIP", str, None),
                key_dir=home_dir / "ssh",
                agent_command=_value(code_agent, "command", str, "claude -p"),
            ),
        ),
        memory=MemoryConfig(
            enabled=_value(memory, "enabled", bool, True),
            directory=home_dir / "memory",
        ),
        channels=_parse_channels(data),
        home_dir=home_dir,
        workspace_dir=workspace_dir,
        host_user=host_user,
        host_home=host_home,
        log_level=_optional("LOG_LEVEL", _value(data, "logLevel", str, "info")),
        source_path=source,
    )


def config_to_dict(config: Config, mask_secrets: bool = True) -> dict:
    """
    Render the configuration for display (`localclaw config show`).

    Secrets are replaced with a placeholder unless mask_secrets is False.
    """
    def convert(value: Any) -> Any:
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, tuple):
            return [convert(v) for v in value]
        if hasattr(value, "__dataclass_fields__"):
            return {name: convert(getattr(value, name)) for name in value.__dataclass_fields__}
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        return value

    result = convert(config)
    if mask_secrets:
        if result["gateway"]["auth_token"]:
            result["gateway"]["auth_token"] = "***hidden***"
        if result["llm"]["api_key"]:
            result["llm"]["api_key"] = "***hidden***"
    return result


# ==============================================================================
# Singleton
# ==============================================================================

_config_instance: Config | None = None


def get_config() -> Config:
    """
    Get the singleton configuration instance.

    Loaded on first access and cached for subsequent calls.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = load_config()
        Logger.set_level(_config_instance.log_level)
    return _config_instance


def reset_config() -> None:
    """Forget the cached configuration so the next get_config() reloads it."""
    global _config_instance
    _config_instance = None
