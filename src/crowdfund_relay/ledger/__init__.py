"""EVM ledger access: websocket stream, log decoding and contract reads."""

from crowdfund_relay.ledger.connection import WebSocketStreamConnection
from crowdfund_relay.ledger.decoder import AbiEventDecoder
from crowdfund_relay.ledger.queries import LedgerQueries

__all__ = ["AbiEventDecoder", "LedgerQueries", "WebSocketStreamConnection"]
