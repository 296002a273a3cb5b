"""
Execution Engine - Orchestration of the swap order pipeline

The central hub that coordinates:
- Order admission and validation
- Worker-pool processing through the admission queue
- Route selection across venues
- Lifecycle transitions, persistence and status broadcasting
- Latency and execution statistics

This is the interface the API layer talks to: it acknowledges submissions
immediately and reports every outcome after that through status events.
"""

import asyncio
import statistics
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Any, Union

from loguru import logger

from .order_schemas import Order, OrderRequest, OrderStatus, StatusEvent, ExecutionResult, RoutingDecision
from .order_state_machine import OrderStateMachine, Transition, CANCELLED_BY_USER
from .admission_queue import AdmissionQueue, QueueConfig, Job
from .route_selector import RouteSelector, RoutingConfig
from .status_broadcaster import StatusBroadcaster, BroadcasterConfig, Subscription
from .venue_client import VenueClient, default_venues
from .order_store import OrderStore, InMemoryOrderStore
from .latency_monitor import LatencyMonitor
from .errors import (
    ValidationError, ExecutionError, VenueError,
    CancellationRejectedError, OrderNotFoundError
)


@dataclass
class EngineConfig:
    """Configuration for the Execution Engine"""

    queue: QueueConfig = field(default_factory=QueueConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    broadcaster: BroadcasterConfig = field(default_factory=BroadcasterConfig)

    execution_timeout_seconds: float = 30.0     # Venue execute() timeout
    build_delay_seconds: float = 0.0            # Time spent building the transaction
    terminal_retention_seconds: float = 300.0   # How long finished orders stay in memory

    def __post_init__(self):
        if self.execution_timeout_seconds <= 0:
            raise ValueError("execution_timeout_seconds must be positive")
        if self.build_delay_seconds < 0:
            raise ValueError("build_delay_seconds must be non-negative")


class ExecutionEngine:
    """
    Main execution engine for swap orders

    Owns one state machine per live order. Every transition is applied under
    the order's lock, persisted and broadcast before the next one starts.
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 venues: Optional[Dict[str, VenueClient]] = None,
                 store: Optional[OrderStore] = None,
                 broadcaster: Optional[StatusBroadcaster] = None,
                 latency_monitor: Optional[LatencyMonitor] = None):
        self.config = config or EngineConfig()
        self.venues = venues if venues is not None else default_venues()
        self.store = store or InMemoryOrderStore()
        self.latency_monitor = latency_monitor or LatencyMonitor()

        self.router = RouteSelector(self.venues, self.config.routing, self.latency_monitor)
        self.broadcaster = broadcaster or StatusBroadcaster(config=self.config.broadcaster)
        self.broadcaster.set_snapshot_provider(self._snapshot)
        self.queue = AdmissionQueue(
            self.config.queue,
            processor=self._process_job,
            on_failed=self._on_job_failed,
            on_retry=self._on_job_retry
        )

        # Live orders
        self._machines: Dict[str, OrderStateMachine] = {}
        self._order_locks: Dict[str, asyncio.Lock] = {}
        self._evictions: Dict[str, asyncio.TimerHandle] = {}
        # Payload of the latest transition, folded into snapshots of live orders
        self._last_payloads: Dict[str, Dict[str, Any]] = {}

        self.running = False

        # Performance tracking
        self.orders_submitted = 0
        self.orders_rejected = 0
        self.orders_confirmed = 0
        self.orders_failed = 0
        self.orders_cancelled = 0

    async def start(self) -> None:
        """Start queue workers and the broadcaster's reaper"""
        if self.running:
            return
        await self.broadcaster.start()
        await self.queue.start()
        self.running = True
        logger.info(f"Execution engine started with venues: {', '.join(self.venues)}")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop gracefully; active orders finish unless `timeout` expires"""
        if not self.running:
            return
        logger.info("Stopping execution engine...")
        self.running = False
        await self.queue.shutdown(timeout=timeout)
        await self.broadcaster.stop()
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        logger.info("Execution engine stopped")

    async def submit(self, request: Union[OrderRequest, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Accept a market order

        Returns:
            {'order_id': ..., 'status': 'pending'}

        Raises:
            ValidationError: malformed request; nothing is stored or queued
        """
        if isinstance(request, dict):
            request = OrderRequest.from_dict(request)

        errors = request.validate()
        if errors:
            self.orders_rejected += 1
            logger.warning(f"Rejected order {request.pair}: {'; '.join(errors)}")
            raise ValidationError(errors)

        order = Order.from_request(request)
        order_id = order.order_id
        self._machines[order_id] = OrderStateMachine(order)
        self._order_locks[order_id] = asyncio.Lock()

        await self.store.create_order(order)
        await self.store.append_execution_log(order_id, 'order_submitted', request.to_dict())
        self.latency_monitor.start_timer(order_id, 'end_to_end')

        await self.queue.enqueue(order_id, request)
        self.orders_submitted += 1
        logger.info(f"Order {order_id} submitted: {request.amount} {request.token_in} -> "
                    f"{request.token_out} (slippage {request.slippage:.2%})")

        return {'order_id': order_id, 'status': order.status.value}

    async def get_status(self, order_id: str) -> Optional[Order]:
        """Current order record, or None for an unknown id"""
        machine = self._machines.get(order_id)
        if machine is not None:
            return machine.snapshot()
        return await self.store.get_order(order_id)

    async def cancel(self, order_id: str) -> Order:
        """
        Cancel an order that no worker has started

        Raises:
            OrderNotFoundError: unknown order id
            CancellationRejectedError: the order has left pending
        """
        machine = self._machines.get(order_id)
        if machine is None:
            order = await self.store.get_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            raise CancellationRejectedError(order_id, order.status.value)

        if machine.status != OrderStatus.PENDING:
            raise CancellationRejectedError(order_id, machine.status.value)

        try:
            await self.queue.cancel(order_id)
        except OrderNotFoundError:
            raise CancellationRejectedError(order_id, machine.status.value)

        await self._apply(order_id, lambda m: m.cancel())
        await self.store.append_execution_log(order_id, 'order_cancelled', {'reason': 'user request'})
        logger.info(f"Order {order_id} cancelled by user")
        return machine.snapshot()

    async def subscribe_status(self, order_id: str) -> Subscription:
        """Stream of status events for one order, starting with its current status"""
        return await self.broadcaster.subscribe(order_id)

    async def subscribe_global(self) -> Subscription:
        return await self.broadcaster.subscribe_global()

    async def unsubscribe(self, subscription: Subscription) -> None:
        await self.broadcaster.unsubscribe(subscription)

    async def _snapshot(self, order_id: str) -> Optional[StatusEvent]:
        order = await self.get_status(order_id)
        if order is None:
            return None
        event = StatusEvent.from_order(order)
        payload = self._last_payloads.get(order_id)
        if payload and order_id in self._machines:
            event.data.update(payload)
        return event

    async def _apply(self, order_id: str, action: Callable[[OrderStateMachine], Optional[Transition]],
                     payload: Optional[Dict[str, Any]] = None) -> Optional[Transition]:
        """Run one state machine step, then persist and broadcast it"""
        machine = self._machines[order_id]
        async with self._order_locks[order_id]:
            transition = action(machine)
            if transition is None:
                return None
            self._last_payloads[order_id] = dict(payload or {})

            order = machine.snapshot()
            fields = dict(transition.changes)
            fields['status'] = order.status
            fields['updated_at'] = order.updated_at
            await self.store.update_order(order_id, fields)

            event = StatusEvent.from_order(order)
            if payload:
                event.data.update(payload)
            await self.broadcaster.publish(order_id, event)

        logger.debug(f"Order {order_id}: {transition.previous.value} -> {transition.status.value}")
        if transition.status.is_terminal:
            self._finalize(order_id, transition.status)
        return transition

    async def _process_job(self, job: Job) -> Optional[Order]:
        """
        Drive one order forward from its current status

        A retried job resumes where the previous attempt stopped.
        """
        order_id = job.order_id
        machine = self._machines.get(order_id)
        if machine is None or machine.is_terminal:
            return None

        if machine.status == OrderStatus.PENDING:
            await self._apply(order_id, lambda m: m.start_routing())

        if machine.status == OrderStatus.ROUTING:
            decision = await self._route(order_id, machine.snapshot())
            await self._apply(order_id, lambda m: m.record_route(decision),
                              payload={'routing_decision': decision.to_dict()})
            await self.store.append_execution_log(order_id, 'routing_decision', decision.to_dict())

        if machine.status == OrderStatus.BUILDING:
            if self.config.build_delay_seconds:
                await asyncio.sleep(self.config.build_delay_seconds)
            await self._apply(order_id, lambda m: m.mark_submitted())

        if machine.status == OrderStatus.SUBMITTED:
            result = await self._execute(order_id, machine.snapshot())
            await self._apply(order_id, lambda m: m.confirm(result),
                              payload={'execution': result.to_dict()})
            await self.store.append_execution_log(order_id, 'execution_completed', result.to_dict())

        return machine.snapshot()

    async def _route(self, order_id: str, order: Order) -> RoutingDecision:
        self.latency_monitor.start_timer(order_id, 'routing')
        try:
            return await self.router.get_best_route(order.token_in, order.token_out, order.amount)
        finally:
            self.latency_monitor.stop_timer(order_id, 'routing')

    async def _execute(self, order_id: str, order: Order) -> ExecutionResult:
        venue_name = order.selected_venue
        venue = self.venues.get(venue_name)
        if venue is None:
            raise ExecutionError(venue_name, "venue is not configured")

        timeout = self.config.execution_timeout_seconds
        self.latency_monitor.start_timer(order_id, 'execution')
        try:
            return await asyncio.wait_for(
                venue.execute(order.token_in, order.token_out, order.amount, order.slippage),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            raise ExecutionError(venue_name, f"execution timed out after {timeout:.1f}s")
        except VenueError as e:
            raise ExecutionError(venue_name, str(e))
        finally:
            self.latency_monitor.stop_timer(order_id, 'execution')

    async def _on_job_retry(self, job: Job, error: BaseException, delay: float) -> None:
        await self.store.append_execution_log(job.order_id, 'retry_scheduled', {
            'attempt': job.attempts_made,
            'max_attempts': job.max_attempts,
            'delay_seconds': delay,
            'error': str(error)
        }, level='warning')

    async def _on_job_failed(self, job: Job, error: BaseException) -> None:
        order_id = job.order_id
        machine = self._machines.get(order_id)
        if machine is None or machine.is_terminal:
            return

        reason = str(error) or error.__class__.__name__
        await self._apply(order_id, lambda m: m.fail(reason))
        await self.store.append_execution_log(order_id, 'execution_failed', {
            'error': reason,
            'attempts': job.attempts_made
        }, level='error')

    def _finalize(self, order_id: str, status: OrderStatus) -> None:
        if status == OrderStatus.CONFIRMED:
            self.orders_confirmed += 1
            self.latency_monitor.stop_timer(order_id, 'end_to_end')
        else:
            self.orders_failed += 1
            self.latency_monitor.discard_timers(order_id)
            machine = self._machines.get(order_id)
            if machine and machine.snapshot().error_message == CANCELLED_BY_USER:
                self.orders_cancelled += 1

        retention = self.config.terminal_retention_seconds
        self._evictions[order_id] = asyncio.get_running_loop().call_later(retention, self._evict, order_id)

    def _evict(self, order_id: str) -> None:
        self._evictions.pop(order_id, None)
        self._machines.pop(order_id, None)
        self._order_locks.pop(order_id, None)
        self._last_payloads.pop(order_id, None)

    def stats(self) -> Dict[str, Any]:
        """Admission queue statistics"""
        return self.queue.stats()

    async def health_check(self, check_venues: bool = False) -> Dict[str, Any]:
        """Queue and broadcaster health, optionally probing every venue"""
        queue_health = self.queue.health_check()
        health = {
            'status': queue_health['status'],
            'running': self.running,
            'queue': queue_health,
            'broadcaster': self.broadcaster.health_check(),
            'live_orders': len(self._machines)
        }
        if check_venues:
            venues = await self.router.health_check()
            health['venues'] = venues
            if not venues['overall']:
                health['status'] = 'degraded'
        return health

    async def execution_stats(self, limit: int = 1000) -> Dict[str, Any]:
        """Success rate, average confirmation time and status breakdown of recent orders"""
        orders = await self.store.get_recent_orders(limit)
        confirmed = [order for order in orders if order.status == OrderStatus.CONFIRMED]
        durations = [(order.updated_at - order.created_at).total_seconds() * 1000 for order in confirmed]

        return {
            'total_orders': len(orders),
            'success_rate': len(confirmed) / len(orders) * 100 if orders else 0.0,
            'average_execution_time_ms': statistics.mean(durations) if durations else 0.0,
            'status_breakdown': dict(Counter(order.status.value for order in orders)),
            'router': self.router.get_performance_summary()
        }

    def latency_summary(self) -> Dict[str, Any]:
        return self.latency_monitor.get_summary()
