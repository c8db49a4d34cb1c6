"""Plain Markdown bodies for every notification the relay posts."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from crowdfund_relay.ledger.abi import WEI_PER_ETH
from crowdfund_relay.models.events import LedgerEvent
from crowdfund_relay.models.records import CrowdfundRecord

EXPLORER = "https://basescan.org"
LAUNCHPAD = "https://www.larry.club/token"


def format_eth(wei: int, places: int = 4) -> str:
    """Wei as a trimmed decimal ETH string, e.g. 1500000000000000000 -> '1.5'."""
    value = Decimal(wei) / Decimal(WEI_PER_ETH)
    text = f"{value:.{places}f}".rstrip("0").rstrip(".")
    if text in ("", "-0"):
        text = "0"
    if text == "0" and wei > 0:
        return f"<{Decimal(1).scaleb(-places)}"
    return text


def format_supply(amount: int | None) -> str:
    if amount is None:
        return "?"
    value = Decimal(amount) / Decimal(WEI_PER_ETH)
    return f"{value.normalize():,f}"


def short(address: str | None) -> str:
    if not address:
        return "?"
    return f"{address[:6]}...{address[-4:]}"


def address_link(address: str) -> str:
    return f"[{short(address)}]({EXPLORER}/address/{address})"


def tx_link(tx_hash: str) -> str:
    return f"[tx]({EXPLORER}/tx/{tx_hash})"


def _title(record: CrowdfundRecord) -> str:
    name = record.token_name or "Unnamed"
    return f"{name} (${record.token_symbol})" if record.token_symbol else name


# ── Crowdfund lifecycle ────────────────────────────────────


def crowdfund_created(record: CrowdfundRecord) -> str:
    lines = [
        f"**New crowdfund: {_title(record)}**",
        f"Crowdfund: {address_link(record.address)}",
    ]
    if record.creator:
        lines.append(f"Creator: {address_link(record.creator)}")
    if record.party:
        lines.append(f"Party: {address_link(record.party)}")
    lines.append(f"Supply: {format_supply(record.total_supply)}")
    lines.append(f"{LAUNCHPAD}/{record.address}")
    return "\n".join(lines)


def contribution(
    record: CrowdfundRecord, contributor: str, amount: int, running_total: int, tx_hash: str,
) -> str:
    return (
        f"**+{format_eth(amount)} ETH** from {address_link(contributor)} "
        f"({tx_link(tx_hash)})\n"
        f"Total raised for {_title(record)}: **{format_eth(running_total)} ETH**"
    )


def finalized(record: CrowdfundRecord, token_address: str | None) -> str:
    lines = [
        f"**{_title(record)} finalized** with {format_eth(record.total_contributed)} ETH "
        f"from {len(record.contributions)} contribution(s)",
    ]
    if token_address:
        lines.append(f"Token: {EXPLORER}/token/{token_address}")
    return "\n".join(lines)


def refunded(record: CrowdfundRecord) -> str:
    return (
        f"**{_title(record)} refunded**: the crowdfund did not finalize and "
        f"{format_eth(record.total_contributed)} ETH is returning to contributors"
    )


# ── Token launches ─────────────────────────────────────────


def token_created(event: LedgerEvent) -> str:
    f = event.fields
    token = str(f.get("token_address", ""))
    lines = [
        f"**Token launch: {f.get('name', '?')} (${f.get('symbol', '?')})**",
        f"Contract: {EXPLORER}/token/{token}",
        f"Deployer: {address_link(str(f.get('deployer', '')))}",
        f"Supply: {format_supply(f.get('supply'))}",
    ]
    if f.get("cast_hash"):
        lines.append(f"Cast: https://warpcast.com/~/conversations/{f['cast_hash']}")
    return "\n".join(lines)


# ── Presales ───────────────────────────────────────────────


def presale_created(event: LedgerEvent) -> str:
    f = event.fields
    lines = [
        f"**New presale #{f.get('presale_id', '?')}: {f.get('name', '?')} (${f.get('symbol', '?')})**",
        f"Deployer: {address_link(str(f.get('deployer', '')))} (fid {f.get('fid', '?')})",
        f"Supply: {format_supply(f.get('supply'))}",
        f"Available: {f.get('bps_available', '?')} bps at {format_eth(int(f.get('eth_per_bps') or 0))} ETH/bps",
    ]
    end_time = f.get("end_time")
    if end_time:
        ends = datetime.fromtimestamp(int(end_time), tz=timezone.utc)
        lines.append(f"Ends: {ends:%Y-%m-%d %H:%M} UTC")
    if f.get("cast_hash"):
        lines.append(f"Cast: https://warpcast.com/~/conversations/{f['cast_hash']}")
    lines.append(tx_link(event.transaction_hash))
    return "\n".join(lines)


def presale_purchase(event: LedgerEvent, eth_per_bps: int | None = None) -> str:
    f = event.fields
    amount = int(f.get("eth_amount") or 0)
    line = (
        f"**+{format_eth(amount)} ETH** into presale #{f.get('presale_id', '?')} "
        f"from {address_link(str(f.get('buyer', '')))} ({tx_link(event.transaction_hash)})"
    )
    if eth_per_bps:
        line += f"\nBought {amount // eth_per_bps} bps"
    return line
