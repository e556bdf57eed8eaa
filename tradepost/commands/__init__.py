from discord import app_commands

from tradepost.commands.orders import setup_orders
from tradepost.commands.price import setup_price
from tradepost.config.runtime import RuntimeConfig


def setup_commands(tree: app_commands.CommandTree, config: RuntimeConfig) -> None:
    setup_orders(tree, config)
    setup_price(tree, config)
