"""
Deterministic venue doubles and small async helpers shared by the tests
"""

import asyncio
from typing import List, Optional

from src.swap_execution.order_schemas import Quote, ExecutionResult, OrderStatus, StatusEvent
from src.swap_execution.order_state_machine import allowed_targets
from src.swap_execution.venue_client import VenueClient
from src.swap_execution.errors import VenueError
from src.swap_execution.admission_queue import QueueConfig
from src.swap_execution.route_selector import RoutingConfig
from src.swap_execution.execution_engine import EngineConfig


TERMINAL = ('confirmed', 'failed')


class ScriptedVenue(VenueClient):
    """Venue with fixed prices, optional delays and forced failures"""

    def __init__(self, name: str, price: float = 100.0, fee: float = 0.0025, slippage: float = 0.001,
                 quote_delay: float = 0.0, execute_delay: float = 0.0,
                 fail_quotes: bool = False, quote_failures: int = 0,
                 execute_failures: int = 0, executed_price: Optional[float] = None,
                 label: Optional[str] = None):
        super().__init__(name)
        self.price = price
        self.fee = fee
        self.slippage = slippage
        self.quote_delay = quote_delay
        self.execute_delay = execute_delay
        self.fail_quotes = fail_quotes
        self.quote_failures = quote_failures
        self.execute_failures = execute_failures
        self.executed_price = executed_price
        self.label = label or name

        self.quote_calls = 0
        self.execute_calls = 0

    async def quote(self, token_in: str, token_out: str, amount: int) -> Quote:
        self.quote_calls += 1
        if self.quote_delay:
            await asyncio.sleep(self.quote_delay)
        if self.fail_quotes or self.quote_calls <= self.quote_failures:
            raise VenueError(self.name, f"{self.name} API temporarily unavailable")
        return Quote(venue=self.label, price=self.price, fee=self.fee,
                     slippage=self.slippage, estimated_cost=5000.0)

    async def execute(self, token_in: str, token_out: str, amount: int,
                      max_slippage: float) -> ExecutionResult:
        self.execute_calls += 1
        if self.execute_delay:
            await asyncio.sleep(self.execute_delay)
        if self.execute_calls <= self.execute_failures:
            raise VenueError(self.name, f"{self.name} rejected the swap")
        price = self.executed_price if self.executed_price is not None else self.price
        return ExecutionResult(
            tx_ref=f"{self.name}-{self.execute_calls:04d}".ljust(64, "0"),
            executed_price=price,
            actual_amount=amount * price,
            cost=5000.0
        )


def two_venues(**overrides) -> dict:
    """raydium at 100.0 and meteora at 101.0 (meteora wins on net price)"""
    raydium = ScriptedVenue("raydium", price=100.0, **overrides)
    meteora = ScriptedVenue("meteora", price=101.0, fee=0.002, **overrides)
    return {"raydium": raydium, "meteora": meteora}


def fast_engine_config(**queue_overrides) -> EngineConfig:
    queue_settings = dict(concurrency=10, retry_base_delay_seconds=0.01, max_attempts=3)
    queue_settings.update(queue_overrides)
    return EngineConfig(
        queue=QueueConfig(**queue_settings),
        routing=RoutingConfig(quote_timeout_seconds=0.5),
        execution_timeout_seconds=1.0
    )


async def collect_until_terminal(subscription, timeout: float = 5.0) -> List[StatusEvent]:
    """Read lifecycle events until a terminal status arrives"""
    events = []
    while True:
        event = await subscription.get(timeout=timeout)
        assert event is not None, "subscription closed before a terminal status"
        events.append(event)
        if event.status in TERMINAL:
            return events


async def wait_for_status(engine, order_id: str, status: OrderStatus, timeout: float = 5.0) -> None:
    async def poll():
        while True:
            order = await engine.get_status(order_id)
            if order is not None and order.status == status:
                return
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


def assert_lifecycle_consistent(statuses: List[str]) -> None:
    """Every consecutive pair is a legal transition and nothing follows a terminal status"""
    for previous, current in zip(statuses, statuses[1:]):
        assert OrderStatus(current) in allowed_targets(OrderStatus(previous)), \
            f"illegal sequence {previous} -> {current} in {statuses}"
