"""Event and call ABI table for the watched contracts."""

from __future__ import annotations

from dataclasses import dataclass

from eth_utils import keccak

from crowdfund_relay.models.events import EventKind


@dataclass(frozen=True)
class EventSpec:
    """Layout of one log: indexed params come from topics, the rest from data."""

    signature: str
    indexed: tuple[str, ...] = ()  # names of indexed address params, in order
    data_names: tuple[str, ...] = ()
    data_types: tuple[str, ...] = ()

    @property
    def topic(self) -> str:
        return "0x" + keccak(text=self.signature).hex()


EVENTS: dict[EventKind, EventSpec] = {
    EventKind.CROWDFUND_CREATED: EventSpec(
        signature="ERC20LaunchCrowdfundCreated(address,address,address,string,string,uint256)",
        indexed=("creator", "crowdfund", "party"),
        data_names=("name", "symbol", "total_supply"),
        data_types=("string", "string", "uint256"),
    ),
    EventKind.CONTRIBUTED: EventSpec(
        signature="Contributed(address,address,uint256,address)",
        data_names=("sender", "contributor", "amount", "delegate"),
        data_types=("address", "address", "uint256", "address"),
    ),
    EventKind.FINALIZED: EventSpec(signature="Finalized()"),
    EventKind.REFUNDED: EventSpec(signature="Refunded()"),
    EventKind.TOKEN_CREATED: EventSpec(
        signature="TokenCreated(address,uint256,address,string,string,uint256,string)",
        data_names=(
            "token_address", "position_id", "deployer", "name", "symbol",
            "supply", "cast_hash",
        ),
        data_types=("address", "uint256", "address", "string", "string", "uint256", "string"),
    ),
    EventKind.PRESALE_CREATED: EventSpec(
        signature=(
            "PreSaleCreated(uint256,uint256,uint256,uint256,address,uint256,"
            "string,string,uint256,string)"
        ),
        data_names=(
            "presale_id", "bps_available", "eth_per_bps", "end_time", "deployer", "fid",
            "name", "symbol", "supply", "cast_hash",
        ),
        data_types=(
            "uint256", "uint256", "uint256", "uint256", "address", "uint256",
            "string", "string", "uint256", "string",
        ),
    ),
    EventKind.PRESALE_PURCHASE: EventSpec(
        signature="PreSalePurchase(uint256,address,uint256)",
        data_names=("presale_id", "buyer", "eth_amount"),
        data_types=("uint256", "address", "uint256"),
    ),
}


def selector(signature: str) -> str:
    """4-byte function selector as 0x hex."""
    return "0x" + keccak(text=signature).hex()[:8]


# Read-only crowdfund calls
TOTAL_CONTRIBUTED = selector("totalContributed()")
TOKEN = selector("token()")

WEI_PER_ETH = 10**18
