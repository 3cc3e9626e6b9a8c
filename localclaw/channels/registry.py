"""
Channel Registry
================

Holds the configured channel sessions by name and starts or stops them.

Single-channel operations fail loudly:
    start("x")   unknown name, already running, or no handler -> ChannelError
    stop("x")    unknown name or not running                  -> ChannelError

Bulk operations are best-effort: one session failing is logged and the
rest carry on.
"""

from pathlib import Path
from typing import Any, Callable

from localclaw.channels import Channel, ChannelError, MessageHandler
from localclaw.channels.slack import SlackChannel
from localclaw.channels.whatsapp import WhatsAppChannel
from localclaw.utils.config import ChannelConfig
from localclaw.utils.logger import Logger

logger = Logger("Channels")

ChannelFactory = Callable[[ChannelConfig, Path | None], Channel]


def _whatsapp(config: ChannelConfig, home_dir: Path | None) -> Channel:
    return WhatsAppChannel(config.name, dict(config.options), home_dir=home_dir)


def _slack(config: ChannelConfig, home_dir: Path | None) -> Channel:
    return SlackChannel(config.name, dict(config.options))


CHANNEL_TYPES: dict[str, ChannelFactory] = {
    "whatsapp": _whatsapp,
    "slack": _slack,
}


class ChannelRegistry:
    """
    Named channel sessions.

    Example:
        registry = ChannelRegistry.from_configs(config.channels, config.home_dir)
        registry.set_handler(on_message)
        await registry.start_all()

        registry.get_status()     # {"personal": True}
        await registry.stop("personal")
    """

    def __init__(self):
        self._channels: dict[str, Channel] = {}
        self._auto_start: dict[str, bool] = {}
        self._handler: MessageHandler | None = None

    @classmethod
    def from_configs(
        cls,
        configs: tuple[ChannelConfig, ...] | list[ChannelConfig],
        home_dir: Path | None = None
    ) -> "ChannelRegistry":
        """Build sessions for every configured channel of a known type."""
        registry = cls()
        for config in configs:
            factory = CHANNEL_TYPES.get(config.type)
            if factory is None:
                logger.warning(f"Unknown channel type: {config.type}")
                continue
            registry.add(factory(config, home_dir), auto_start=config.auto_start)
        return registry

    def add(self, channel: Channel, auto_start: bool = True) -> None:
        if channel.name in self._channels:
            raise ChannelError(f"Channel already registered: {channel.name}")
        self._channels[channel.name] = channel
        self._auto_start[channel.name] = auto_start
        logger.info(f"Channel registered: {channel.type} ({channel.name})")

    def set_handler(self, handler: MessageHandler) -> None:
        self._handler = handler

    def get(self, name: str) -> Channel | None:
        return self._channels.get(name)

    def _require(self, name: str) -> Channel:
        channel = self._channels.get(name)
        if channel is None:
            raise ChannelError(f"Channel not found: {name}")
        return channel

    async def start(self, name: str) -> None:
        channel = self._require(name)
        if channel.is_running():
            raise ChannelError(f"Channel already running: {name}")
        if self._handler is None:
            raise ChannelError("No message handler set")
        await channel.start(self._handler)
        logger.info(f"Channel started: {name}")

    async def stop(self, name: str) -> None:
        channel = self._require(name)
        if not channel.is_running():
            raise ChannelError(f"Channel not running: {name}")
        await channel.stop()
        logger.info(f"Channel stopped: {name}")

    async def start_all(self) -> None:
        if self._handler is None:
            logger.warning("No message handler set, channels not started")
            return

        for name, channel in self._channels.items():
            if not self._auto_start.get(name, True):
                logger.info(f"Channel skipped (autoStart=false): {name}")
                continue
            try:
                await channel.start(self._handler)
                logger.info(f"Channel started: {name}")
            except Exception as e:
                logger.error(f"Failed to start channel {name}", e)

    async def stop_all(self) -> None:
        for name, channel in self._channels.items():
            try:
                await channel.stop()
                logger.info(f"Channel stopped: {name}")
            except Exception as e:
                logger.error(f"Failed to stop channel {name}", e)

    def get_status(self) -> dict[str, bool]:
        """Snapshot of {name: connected}; a new dict on every call."""
        return {name: channel.is_connected() for name, channel in self._channels.items()}

    def list_channels(self) -> list[str]:
        return list(self._channels)

    def describe(self) -> list[dict[str, Any]]:
        return [channel.describe() for channel in self._channels.values()]
