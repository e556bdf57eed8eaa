import asyncio
import math
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from discord import ButtonStyle, Embed, Interaction, app_commands
from discord.errors import NotFound
from discord.ui import Button, View

from tradepost.config.runtime import RuntimeConfig
from tradepost.core.order_modes import limit_mode_label
from tradepost.db import get_sell_orders
from tradepost.services.money import format_price
from tradepost.services.quotes import SellOrderQuote, quote_sell_orders


def _split_terms(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [term for term in raw.replace(",", " ").split() if term]


def _format_synced(value: datetime | None, tz_name: str) -> str:
    if value is None:
        return "never synced"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    return f"synced {value.astimezone(tz).strftime('%m/%d %H:%M')}"


def format_order_line(order: dict, quote: SellOrderQuote, tz_name: str = "UTC") -> str:
    ticker = str(order["commodity_ticker"])
    location = str(order.get("location_name") or order["location_id"])
    if quote.price is None:
        price_text = "price unavailable"
    else:
        price_text = format_price(quote.price, quote.currency)
        if quote.dynamic:
            price_text = f"{price_text} ({order['price_list_code']})"
    quantities = quote.quantities
    line = (
        f"**{ticker}** @ {location} · {quantities.remaining_quantity:,} left · {price_text}"
        f"\n-# {limit_mode_label(order.get('limit_mode'), order.get('limit_quantity'))}"
        f" · {quantities.reserved_quantity:,} reserved"
        f" · {_format_synced(quantities.fio_uploaded_at, tz_name)}"
    )
    if quote.effective_price is not None and quote.effective_price.is_fallback:
        line += f" · priced at {quote.effective_price.location_id}"
    return line


def select_listed_orders(
    orders: list[dict],
    quotes: dict[int, SellOrderQuote],
    show_empty: bool = False,
) -> list[tuple[dict, SellOrderQuote]]:
    listed: list[tuple[dict, SellOrderQuote]] = []
    for order in orders:
        quote = quotes.get(int(order["id"]))
        if quote is None:
            continue
        if not show_empty and quote.remaining_quantity <= 0:
            continue
        listed.append((order, quote))
    return listed


def build_orders_embed(
    listed: list[tuple[dict, SellOrderQuote]],
    page: int,
    per_page: int,
    title: str,
    tz_name: str = "UTC",
) -> Embed:
    pages = max(1, math.ceil(len(listed) / per_page))
    page = max(0, min(page, pages - 1))
    start = page * per_page
    chunk = listed[start:start + per_page]
    if chunk:
        description = "\n".join(format_order_line(order, quote, tz_name) for order, quote in chunk)
    else:
        description = "No sell orders with stock available."
    embed = Embed(title=title, description=description[:4096])
    embed.set_footer(text=f"Page {page + 1}/{pages} · {len(listed)} orders")
    return embed


class OrdersPageView(View):
    def __init__(
        self,
        owner_id: int,
        listed: list[tuple[dict, SellOrderQuote]],
        per_page: int,
        title: str,
        tz_name: str,
    ) -> None:
        super().__init__(timeout=300)
        self._owner_id = owner_id
        self._listed = listed
        self._per_page = per_page
        self._title = title
        self._tz_name = tz_name
        self._page = 0
        self._pages = max(1, math.ceil(len(listed) / per_page))
        self._render()

    async def interaction_check(self, interaction: Interaction) -> bool:
        if interaction.user.id != self._owner_id:
            await interaction.response.send_message(
                "Only the command user can page through these orders.",
                ephemeral=True,
            )
            return False
        return True

    def current_embed(self) -> Embed:
        return build_orders_embed(
            self._listed,
            self._page,
            self._per_page,
            self._title,
            self._tz_name,
        )

    def _render(self) -> None:
        self.clear_items()
        if self._pages <= 1:
            return
        prev_btn = Button(
            label="Prev",
            style=ButtonStyle.secondary,
            disabled=self._page <= 0,
        )
        next_btn = Button(
            label="Next",
            style=ButtonStyle.secondary,
            disabled=self._page >= self._pages - 1,
        )

        async def on_prev(interaction: Interaction) -> None:
            self._page = max(0, self._page - 1)
            self._render()
            await interaction.response.edit_message(embed=self.current_embed(), view=self)

        async def on_next(interaction: Interaction) -> None:
            self._page = min(self._pages - 1, self._page + 1)
            self._render()
            await interaction.response.edit_message(embed=self.current_embed(), view=self)

        prev_btn.callback = on_prev
        next_btn.callback = on_next
        self.add_item(prev_btn)
        self.add_item(next_btn)


def setup_orders(tree: app_commands.CommandTree, config: RuntimeConfig) -> None:
    @tree.command(name="orders", description="List sell orders with what can be bought right now.")
    @app_commands.describe(
        commodity="Commodity tickers, space or comma separated.",
        location="Location ids, space or comma separated (case-sensitive).",
    )
    async def orders(
        interaction: Interaction,
        commodity: str | None = None,
        location: str | None = None,
    ) -> None:
        try:
            await interaction.response.defer(thinking=True)
        except NotFound:
            return

        tickers = [term.upper() for term in _split_terms(commodity)]
        locations = _split_terms(location)
        rows = await asyncio.to_thread(
            get_sell_orders,
            commodity_tickers=tickers,
            location_ids=locations,
        )
        quotes = await quote_sell_orders(rows)
        listed = select_listed_orders(rows, quotes, bool(await config.fetch("SHOW_EMPTY_ORDERS")))

        title_parts = tickers + locations
        title = "Sell Orders" if not title_parts else f"Sell Orders · {' '.join(title_parts)}"
        view = OrdersPageView(
            owner_id=interaction.user.id,
            listed=listed,
            per_page=int(await config.fetch("ORDERS_PER_PAGE")),
            title=title,
            tz_name=str(await config.fetch("DISPLAY_TIMEZONE")),
        )
        try:
            await interaction.followup.send(embed=view.current_embed(), view=view)
        except NotFound:
            return
