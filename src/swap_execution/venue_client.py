"""
Venue Client - Interface to liquidity venues for quoting and execution

Provides a clean abstraction layer over the venues a swap can be routed to.
Real implementations wrap a venue's SDK or HTTP API; SimulatedVenueClient
reproduces realistic venue behaviour (latency, price variance, outages)
for paper trading and local runs.
"""

import asyncio
import random
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from loguru import logger

from .order_schemas import Quote, ExecutionResult
from .errors import VenueError


class VenueClient(ABC):
    """
    Abstract base class for venue clients

    Both calls may raise VenueError (or any exception) and may hang;
    timeouts are enforced by the caller.
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def quote(self, token_in: str, token_out: str, amount: int) -> Quote:
        """Price a prospective swap"""
        pass

    @abstractmethod
    async def execute(self, token_in: str, token_out: str, amount: int,
                      max_slippage: float) -> ExecutionResult:
        """Execute a swap, honouring the slippage tolerance"""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r})"


# Reference prices for common pairs (output units per input unit)
BASE_PRICES: Dict[str, float] = {
    'SOL-USDC': 100.5,
    'SOL-USDT': 100.8,
    'USDC-USDT': 1.001,
    'RAY-SOL': 0.025,
    'MNDE-SOL': 0.012,
}


def base_price(token_in: str, token_out: str) -> float:
    """Reference price for a pair, inverting the reverse pair when needed"""
    pair_key = f"{token_in}-{token_out}"
    reverse_key = f"{token_out}-{token_in}"

    if pair_key in BASE_PRICES:
        return BASE_PRICES[pair_key]
    if reverse_key in BASE_PRICES:
        return 1 / BASE_PRICES[reverse_key]

    # Stable pseudo-price between 0.1 and 10.1 for unknown pairs
    return 0.1 + (zlib.crc32(pair_key.encode()) % 1000) / 100


@dataclass
class VenueConfig:
    """Behaviour profile of a simulated venue"""

    name: str
    base_fee: float = 0.0025                                   # 0.25%
    price_variance: float = 0.02                               # +/-2%
    reliability: float = 0.98                                  # Probability a call succeeds
    latency_range: Tuple[float, float] = (0.15, 0.30)          # Seconds per quote
    execution_latency_range: Tuple[float, float] = (2.0, 3.0)  # Seconds per swap
    slippage_range: Tuple[float, float] = (0.001, 0.003)
    cost_range: Tuple[int, int] = (5000, 15000)                # Compute units
    execution_failure_rate: float = 0.01

    def __post_init__(self):
        if not 0 <= self.reliability <= 1:
            raise ValueError("reliability must be within [0, 1]")
        if self.latency_range[0] > self.latency_range[1]:
            raise ValueError("latency_range must be (low, high)")


RAYDIUM = VenueConfig(
    name="raydium",
    base_fee=0.0025,
    price_variance=0.02,
    reliability=0.98,
    latency_range=(0.15, 0.30),
    slippage_range=(0.001, 0.003),
    cost_range=(5000, 15000)
)

METEORA = VenueConfig(
    name="meteora",
    base_fee=0.002,
    price_variance=0.025,
    reliability=0.96,
    latency_range=(0.18, 0.25),
    slippage_range=(0.0005, 0.003),
    cost_range=(4500, 12500)
)


class SimulatedVenueClient(VenueClient):
    """
    Venue that quotes around reference prices with configurable variance,
    latency and outages

    Pass a seeded `random.Random` to make quotes and failures reproducible.
    """

    def __init__(self, config: VenueConfig, rng: Optional[random.Random] = None,
                 simulate_latency: bool = True):
        super().__init__(config.name)
        self.config = config
        self.rng = rng or random.Random()
        self.simulate_latency = simulate_latency

        self.quotes_served = 0
        self.swaps_executed = 0

    async def _delay(self, bounds: Tuple[float, float]) -> None:
        if self.simulate_latency:
            await asyncio.sleep(self.rng.uniform(*bounds))

    async def quote(self, token_in: str, token_out: str, amount: int) -> Quote:
        await self._delay(self.config.latency_range)

        if self.rng.random() > self.config.reliability:
            raise VenueError(self.name, f"{self.name} API temporarily unavailable")

        variance = (self.rng.random() - 0.5) * 2 * self.config.price_variance
        price = base_price(token_in, token_out) * (1 + variance)

        self.quotes_served += 1
        return Quote(
            venue=self.name,
            price=price,
            fee=self.config.base_fee,
            slippage=self.rng.uniform(*self.config.slippage_range),
            estimated_cost=float(self.rng.randint(*self.config.cost_range))
        )

    async def execute(self, token_in: str, token_out: str, amount: int,
                      max_slippage: float) -> ExecutionResult:
        await self._delay(self.config.execution_latency_range)

        if self.rng.random() < self.config.execution_failure_rate:
            raise VenueError(
                self.name, f"Execution failed on {self.name}: insufficient liquidity or network congestion"
            )

        # Fresh quote for the execution price
        quote = await self.quote(token_in, token_out, amount)

        # Price drift during execution stays within the slippage tolerance
        drift = (self.rng.random() - 0.5) * max_slippage * 2
        executed_price = quote.price * (1 + drift)

        self.swaps_executed += 1
        result = ExecutionResult(
            tx_ref=self._generate_tx_ref(),
            executed_price=executed_price,
            actual_amount=amount * executed_price,
            cost=float(int(quote.estimated_cost * self.rng.uniform(0.9, 1.1)))
        )
        logger.debug(f"{self.name} executed {amount} {token_in}->{token_out} @ {executed_price:.6f}")
        return result

    def _generate_tx_ref(self) -> str:
        return "".join(self.rng.choice("0123456789abcdef") for _ in range(64))


def default_venues(seed: Optional[int] = None, simulate_latency: bool = True) -> Dict[str, VenueClient]:
    """The two stock simulated venues, keyed by name"""
    rng = random.Random(seed) if seed is not None else None
    venues = {}
    for config in (RAYDIUM, METEORA):
        venue_rng = random.Random(rng.getrandbits(64)) if rng else None
        venues[config.name] = SimulatedVenueClient(config, rng=venue_rng,
                                                   simulate_latency=simulate_latency)
    return venues
