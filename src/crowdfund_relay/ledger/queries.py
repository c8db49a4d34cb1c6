"""Read-only contract queries over the stream connection."""

from __future__ import annotations

import logging
from typing import Any

from eth_abi import decode as abi_decode

from crowdfund_relay.interfaces.stream import StreamConnection
from crowdfund_relay.ledger.abi import TOKEN, TOTAL_CONTRIBUTED

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


def _block_tag(block: int | None) -> str:
    return hex(block) if block is not None else "latest"


def _result_bytes(result: Any) -> bytes:
    if not isinstance(result, str) or not result.startswith("0x"):
        raise ValueError(f"unexpected eth_call result: {result!r}")
    return bytes.fromhex(result[2:])


class LedgerQueries:
    """Read-only calls against crowdfund contracts.

    Point queries return None on failure and log a warning; callers
    choose their own fallback.
    """

    def __init__(self, connection: StreamConnection) -> None:
        self._conn = connection

    async def _eth_call(self, to: str, data: str, block: int | None = None) -> bytes:
        result = await self._conn.request(
            "eth_call", [{"to": to, "data": data}, _block_tag(block)],
        )
        return _result_bytes(result)

    async def total_contributed(self, crowdfund: str, block: int | None = None) -> int | None:
        """Ledger running total (wei) as of ``block``."""
        try:
            raw = await self._eth_call(crowdfund, TOTAL_CONTRIBUTED, block)
            (total,) = abi_decode(["uint256"], raw)
            return int(total)
        except Exception as exc:
            log.warning("totalContributed(%s) at block %s failed: %s", crowdfund, block, exc)
            return None

    async def crowdfund_token(self, crowdfund: str) -> str | None:
        """Address of the governance token minted at finalization."""
        try:
            raw = await self._eth_call(crowdfund, TOKEN)
            (token,) = abi_decode(["address"], raw)
            token = str(token).lower()
            return None if token == ZERO_ADDRESS else token
        except Exception as exc:
            log.warning("token(%s) failed: %s", crowdfund, exc)
            return None

    async def block_number(self) -> int | None:
        try:
            return int(await self._conn.request("eth_blockNumber", []), 16)
        except Exception as exc:
            log.warning("eth_blockNumber failed: %s", exc)
            return None

    async def get_logs(
        self, address: str, topics: list[Any], from_block: int, to_block: int | None = None,
    ) -> list[dict[str, Any]]:
        """Historical logs for the catch-up scan. Raises on transport errors."""
        result = await self._conn.request("eth_getLogs", [{
            "address": address,
            "topics": topics,
            "fromBlock": hex(from_block),
            "toBlock": _block_tag(to_block),
        }])
        return list(result or [])
