"""Relay core - orchestrator, subscriptions, health and event handling."""

from crowdfund_relay.relay.backoff import backoff_delay
from crowdfund_relay.relay.handlers import EventHandlers
from crowdfund_relay.relay.health import HealthMonitor
from crowdfund_relay.relay.orchestrator import OrchestratorState, RelayOrchestrator
from crowdfund_relay.relay.registry import SubscriptionRegistry
from crowdfund_relay.relay.router import EventRouter

__all__ = [
    "EventHandlers",
    "EventRouter",
    "HealthMonitor",
    "OrchestratorState",
    "RelayOrchestrator",
    "SubscriptionRegistry",
    "backoff_delay",
]
