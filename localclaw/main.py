"""
LocalClaw - Main Entry Point
============================

Runs the gateway, and offers a few management commands.

Run with:
    python -m localclaw.main [command]

Or after installing:
    localclaw                  # same as `localclaw serve`
    localclaw status           # config summary + LLM connectivity
    localclaw health           # exit 0 when the LLM answers, 1 otherwise
    localclaw models           # models the endpoint offers
    localclaw channels         # configured channels
    localclaw config show      # effective config, secrets masked
    localclaw config path      # which config file was loaded
"""

import argparse
import asyncio
import json
import sys

from localclaw import __version__
from localclaw.utils.config import ConfigError, config_to_dict, get_config
from localclaw.utils.logger import Logger

main_logger = Logger("Main")


def serve() -> None:
    """
    Start the HTTP gateway and the configured channels.

    Blocks until interrupted; uvicorn handles SIGINT/SIGTERM and runs the
    app's shutdown (browser and channels are released there).
    """
    import uvicorn

    from localclaw.agent import Agent
    from localclaw.channels.registry import ChannelRegistry
    from localclaw.gateway import create_app

    main_logger.info("Starting LocalClaw gateway...")

    config = get_config()

    main_logger.info("Creating agent...")
    agent = Agent.from_config(config)

    main_logger.info("Registering channels...")
    channels = ChannelRegistry.from_configs(config.channels, config.home_dir)

    app = create_app(config, agent, channels)

    if not config.gateway.auth_token:
        main_logger.warning("No gateway auth token set, /api/* is open to anyone who can reach it")

    main_logger.info(f"Listening on {config.gateway.host}:{config.gateway.port}")
    uvicorn.run(
        app,
        host=config.gateway.host,
        port=config.gateway.port,
        log_level=config.log_level.lower() if config.log_level.lower() != "warn" else "warning",
    )


async def status() -> int:
    from localclaw.llm import LLMClient

    config = get_config()
    llm = LLMClient(config.llm)
    connected = await llm.test_connection()
    await llm.close()

    print("LocalClaw Status")
    print("================")
    print(f"Gateway: {config.gateway.host}:{config.gateway.port}")
    print(f"LLM provider: {config.llm.provider}")
    print(f"LLM model: {config.llm.model}")
    print(f"LLM base URL: {config.llm.base_url}")
    print(f"LLM connected: {connected}")
    print(f"Memory: {'enabled' if config.memory.enabled else 'disabled'}")
    print(f"Tools - Bash: {config.tools.bash.enabled}")
    print(f"Tools - File: {config.tools.file.enabled}")
    print(f"Tools - Browser: {config.tools.browser.enabled}")
    print(f"Tools - Code agent: {config.tools.code_agent.enabled}")
    return 0


async def health(as_json: bool) -> int:
    from localclaw.health import HealthChecker

    result = await HealthChecker(get_config()).check()

    if as_json:
        print(json.dumps(result.to_dict()))
    else:
        print("Health Check")
        print("============")
        print(f"Healthy: {result.healthy}")
        print(f"Gateway: {result.gateway['status']}")
        print(f"LLM: {result.llm['status']} ({result.llm['provider']}/{result.llm['model']})")
        print(f"Uptime: {int(result.uptime)}s")
    return 0 if result.healthy else 1


async def models() -> int:
    from localclaw.llm import LLMClient

    config = get_config()
    llm = LLMClient(config.llm)
    available = await llm.list_models()
    await llm.close()

    print(f"Current model: {config.llm.model}")
    print(f"Provider: {config.llm.provider}")
    print(f"Base URL: {config.llm.base_url}")

    if available:
        print("\nAvailable models:")
        for model in available:
            marker = " (active)" if model == config.llm.model else ""
            print(f"  - {model}{marker}")
    return 0


def channels() -> int:
    config = get_config()
    print("Configured channels:")
    if not config.channels:
        print("  No channels configured")
    for channel in config.channels:
        auto = "" if channel.auto_start else " [manual start]"
        print(f"  - {channel.type} ({channel.name}){auto}")
    return 0


def show_config(action: str) -> int:
    config = get_config()
    if action == "path":
        print(config.source_path or "No config file found")
    else:
        print(json.dumps(config_to_dict(config), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="localclaw",
        description="Gateway between a local LLM, its tools and messaging channels",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="Run the gateway (default)")
    commands.add_parser("status", help="Show configuration and LLM connectivity")

    health_parser = commands.add_parser("health", help="Check system health")
    health_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    commands.add_parser("models", help="List the models the endpoint offers")
    commands.add_parser("channels", help="List configured channels")

    config_parser = commands.add_parser("config", help="Inspect configuration")
    config_parser.add_argument("action", nargs="?", choices=["show", "path"], default="show")

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Parse arguments and run one command.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    try:
        if args.command in (None, "serve"):
            serve()
            return 0
        if args.command == "status":
            return asyncio.run(status())
        if args.command == "health":
            return asyncio.run(health(args.json))
        if args.command == "models":
            return asyncio.run(models())
        if args.command == "channels":
            return channels()
        if args.command == "config":
            return show_config(args.action)
    except ConfigError as e:
        main_logger.error("Invalid configuration", e)
        return 1

    return 0


def run():
    """
    Synchronous entry point.

    This is called when running with the `localclaw` command.
    """
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
