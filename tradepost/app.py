import logging

import discord

from tradepost.commands import setup_commands
from tradepost.config import LOG_LEVEL, read_token
from tradepost.config.runtime import APP_CONFIG_SPECS, RuntimeConfig, ensure_app_config_defaults
from tradepost.db import init_db

logger = logging.getLogger(__name__)


class TradePostBot(discord.Client):
    def __init__(self, config: RuntimeConfig | None = None) -> None:
        intents = discord.Intents.default()
        super().__init__(intents=intents)
        self.tree = discord.app_commands.CommandTree(self)
        self.config = config or RuntimeConfig()
        self._synced = False

    async def setup_hook(self) -> None:
        for name in APP_CONFIG_SPECS:
            await self.config.fetch(name)
        setup_commands(self.tree, self.config)

    async def on_ready(self) -> None:
        if self._synced:
            return

        for guild in self.guilds:
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)

        self._synced = True
        logger.info("[bot] ready as %s in %d guilds", self.user, len(self.guilds))

    async def on_guild_join(self, guild: discord.Guild) -> None:
        self.tree.copy_global_to(guild=guild)
        await self.tree.sync(guild=guild)
        logger.info("[bot] joined guild %s", guild.id)


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, str(LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    ensure_app_config_defaults()
    bot = TradePostBot()
    bot.run(read_token(), log_handler=None)


if __name__ == "__main__":
    main()
