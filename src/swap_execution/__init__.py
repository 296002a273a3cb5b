"""
Swap Execution Module

Asynchronous market-order pipeline for token swaps across competing venues.

Core Components:
- AdmissionQueue: bounded-concurrency, rate-limited job processing with retries
- RouteSelector: parallel venue quoting and net-price routing
- OrderStateMachine: strict order lifecycle
- StatusBroadcaster: real-time status fan-out
- ExecutionEngine: main orchestration engine
"""

from .order_schemas import Order, OrderRequest, OrderStatus, Quote, RoutingDecision, ExecutionResult, StatusEvent
from .errors import (
    SwapExecutionError, ValidationError, DuplicateAdmissionError, LiquidityUnavailableError,
    ExecutionError, CancellationRejectedError, OrderNotFoundError, InvalidTransitionError,
    VenueError, VenueTimeoutError
)
from .order_state_machine import OrderStateMachine
from .admission_queue import AdmissionQueue, QueueConfig, Job, JobState
from .route_selector import RouteSelector, RoutingConfig
from .status_broadcaster import StatusBroadcaster, BroadcasterConfig, EventBus, InMemoryEventBus, Subscription
from .venue_client import VenueClient, SimulatedVenueClient, VenueConfig, default_venues
from .order_store import OrderStore, InMemoryOrderStore
from .latency_monitor import LatencyMonitor
from .execution_engine import ExecutionEngine, EngineConfig

__all__ = [
    # Order schemas
    'Order',
    'OrderRequest',
    'OrderStatus',
    'Quote',
    'RoutingDecision',
    'ExecutionResult',
    'StatusEvent',

    # Errors
    'SwapExecutionError',
    'ValidationError',
    'DuplicateAdmissionError',
    'LiquidityUnavailableError',
    'ExecutionError',
    'CancellationRejectedError',
    'OrderNotFoundError',
    'InvalidTransitionError',
    'VenueError',
    'VenueTimeoutError',

    # Core components
    'OrderStateMachine',
    'AdmissionQueue',
    'QueueConfig',
    'Job',
    'JobState',
    'RouteSelector',
    'RoutingConfig',
    'StatusBroadcaster',
    'BroadcasterConfig',
    'EventBus',
    'InMemoryEventBus',
    'Subscription',
    'VenueClient',
    'SimulatedVenueClient',
    'VenueConfig',
    'default_venues',
    'OrderStore',
    'InMemoryOrderStore',
    'LatencyMonitor',
    'ExecutionEngine',
    'EngineConfig'
]
