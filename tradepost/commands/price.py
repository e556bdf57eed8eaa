from io import BytesIO

import matplotlib
from discord import Embed, File, Interaction, app_commands
from discord.errors import NotFound

matplotlib.use("Agg")
from matplotlib import pyplot as plt

from tradepost.config.runtime import RuntimeConfig
from tradepost.services.money import format_amount, format_price
from tradepost.services.pricing import EffectivePrice, calculate_effective_price_with_fallback


def _display_name(code: str, name: str | None) -> str:
    if name and name != code:
        return f"{code} ({name})"
    return code


def _adjustment_label(adjustment) -> str:
    if adjustment.description:
        return adjustment.description
    if adjustment.type == "percentage":
        return f"{adjustment.value:+g}%"
    return f"{adjustment.value:+g} fixed"


def render_adjustment_chart(effective: EffectivePrice) -> File | None:
    if not effective.adjustments:
        return None

    labels = ["Base"]
    running = [effective.base_price]
    for adjustment in effective.adjustments:
        labels.append(_adjustment_label(adjustment)[:18])
        running.append(running[-1] + adjustment.applied_amount)
    labels.append("Final")
    running.append(effective.final_price)

    fig, ax = plt.subplots(figsize=(6.5, 4))
    fig.patch.set_alpha(0)
    ax.patch.set_alpha(0)
    x_values = list(range(len(labels)))
    color = "#2ecc71" if effective.final_price >= effective.base_price else "#e74c3c"
    ax.step(x_values, running, where="mid", color=color, linewidth=3.0)
    ax.plot(x_values, running, linestyle="none", marker="o", markersize=8, color=color)
    ax.set_title(
        f"{effective.commodity_ticker} @ {effective.location_id}",
        fontsize=16,
        color="#666666",
    )
    ax.set_ylabel(effective.currency, fontsize=12, color="#666666")
    ax.set_xticks(x_values)
    ax.set_xticklabels(labels, rotation=30, ha="right", fontsize=10, color="#666666")
    ax.tick_params(axis="y", labelsize=10, colors="#666666")
    ax.grid(True, alpha=0.2, color="#999999")

    buf = BytesIO()
    fig.tight_layout()
    fig.savefig(buf, format="png", dpi=140, transparent=True)
    plt.close(fig)
    buf.seek(0)
    return File(buf, filename="price.png")


def build_price_payload(effective: EffectivePrice) -> tuple[Embed, File | None]:
    embed = Embed(
        title=f"{effective.commodity_ticker} · {effective.price_list_code}",
        description=_display_name(effective.location_id, effective.location_name),
    )
    if effective.commodity_name:
        embed.title = f"{embed.title} · {effective.commodity_name}"
    embed.add_field(
        name="Base Price",
        value=format_price(effective.base_price, effective.currency),
        inline=True,
    )
    embed.add_field(
        name="Final Price",
        value=f"**{format_price(effective.final_price, effective.currency)}**",
        inline=True,
    )
    embed.add_field(name="Source", value=effective.source, inline=True)

    if effective.adjustments:
        lines = [
            f"`#{adj.id}` {_adjustment_label(adj)}: {format_amount(adj.applied_amount)}"
            for adj in effective.adjustments
        ]
        embed.add_field(name="Adjustments", value="\n".join(lines)[:1024], inline=False)

    if effective.is_fallback:
        embed.set_footer(
            text=(
                f"No price at {effective.requested_location_id}; "
                f"showing default location {effective.location_id}."
            )
        )

    embed.color = 0x2ECC71 if effective.final_price >= effective.base_price else 0xE74C3C
    chart_file = render_adjustment_chart(effective)
    if chart_file is not None:
        embed.set_image(url="attachment://price.png")
    return embed, chart_file


def setup_price(tree: app_commands.CommandTree, config: RuntimeConfig) -> None:
    @tree.command(name="price", description="Show the effective price of a commodity.")
    @app_commands.describe(
        ticker="Commodity ticker, e.g. RAT.",
        location="Location id, e.g. BEN or KW-020c (case-sensitive).",
        price_list="Price list code. Defaults to the configured price list.",
    )
    async def price(
        interaction: Interaction,
        ticker: str,
        location: str,
        price_list: str | None = None,
    ) -> None:
        try:
            await interaction.response.defer(thinking=True)
        except NotFound:
            # Interaction token expired before we could acknowledge it.
            return

        code = (price_list or str(await config.fetch("DEFAULT_PRICE_LIST"))).strip().upper()

        effective = await calculate_effective_price_with_fallback(
            code,
            ticker.strip(),
            location.strip(),
        )
        try:
            if effective is None:
                await interaction.followup.send(
                    f"No price for `{ticker.strip().upper()}` at `{location.strip()}` in `{code}`.",
                    ephemeral=True,
                )
                return
            embed, chart_file = build_price_payload(effective)
            if chart_file is None:
                await interaction.followup.send(embed=embed)
            else:
                await interaction.followup.send(embed=embed, file=chart_file)
        except NotFound:
            return
