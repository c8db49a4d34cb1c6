"""ABI log decoder - turns raw eth_subscribe / eth_getLogs entries into LedgerEvents."""

from __future__ import annotations

import logging
from typing import Any

from eth_abi import decode as abi_decode

from crowdfund_relay.ledger.abi import EVENTS, EventSpec
from crowdfund_relay.models.events import EventKind, LedgerEvent

log = logging.getLogger(__name__)


def _hex_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def _topic_address(topic: str) -> str:
    """An indexed address is the low 20 bytes of its 32-byte topic."""
    return "0x" + topic[-40:].lower()


def _hex_bytes(data: str) -> bytes:
    data = data[2:] if data.startswith("0x") else data
    return bytes.fromhex(data)


def _normalize(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("0x") and len(value) == 42:
        return value.lower()
    return value


class AbiEventDecoder:
    """Decodes logs for the event kinds in the ABI table."""

    def __init__(self, events: dict[EventKind, EventSpec] | None = None) -> None:
        self._events = events or EVENTS

    def topic_for(self, kind: EventKind) -> str:
        return self._events[kind].topic

    def decode(self, kind: EventKind, log_entry: dict[str, Any]) -> LedgerEvent | None:
        if log_entry.get("removed"):
            log.info(
                "Skipping removed %s log in tx %s",
                kind.value, log_entry.get("transactionHash"),
            )
            return None

        spec = self._events[kind]
        topics: list[str] = log_entry.get("topics") or []
        if not topics or topics[0].lower() != spec.topic:
            log.debug("Topic mismatch for %s log: %s", kind.value, topics[:1])
            return None

        try:
            fields: dict[str, Any] = {}
            if len(topics) < 1 + len(spec.indexed):
                raise ValueError(
                    f"expected {len(spec.indexed)} indexed topics, got {len(topics) - 1}"
                )
            for name, topic in zip(spec.indexed, topics[1:]):
                fields[name] = _topic_address(topic)

            if spec.data_types:
                values = abi_decode(list(spec.data_types), _hex_bytes(log_entry.get("data", "0x")))
                for name, value in zip(spec.data_names, values):
                    fields[name] = _normalize(value)

            return LedgerEvent(
                kind=kind,
                source_address=str(log_entry["address"]).lower(),
                transaction_hash=str(log_entry["transactionHash"]).lower(),
                block_number=_hex_int(log_entry.get("blockNumber")),
                log_index=_hex_int(log_entry.get("logIndex")),
                fields=fields,
            )
        except Exception as exc:
            log.warning(
                "Failed to decode %s log in tx %s: %s",
                kind.value, log_entry.get("transactionHash"), exc,
            )
            return None
