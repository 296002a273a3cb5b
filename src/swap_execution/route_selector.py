"""
Route Selector - Best-venue selection by net price

Features:
- Concurrent quoting across every configured venue
- Independent per-venue timeout; a slow or failing venue never blocks the others
- Net price comparison: price * (1 - fee - slippage)
- Partial-failure fallback to whichever venues answered

Selection is pure given the quotes received; quotes are always fetched
fresh for each decision.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple, Any

from loguru import logger

from .order_schemas import Quote, RoutingDecision
from .venue_client import VenueClient
from .errors import LiquidityUnavailableError, VenueTimeoutError
from .latency_monitor import LatencyMonitor


@dataclass
class RoutingConfig:
    """Configuration for route selection"""

    quote_timeout_seconds: float = 5.0       # Per-venue quote timeout
    health_check_pair: Tuple[str, str] = ("SOL", "USDC")
    health_check_amount: int = 1_000_000

    def __post_init__(self):
        if self.quote_timeout_seconds <= 0:
            raise ValueError("quote_timeout_seconds must be positive")


def price_improvement(best_net: float, other_net: float) -> float:
    """Relative net-price gap in percent, never negative"""
    floor = min(best_net, other_net)
    if floor <= 0:
        return 0.0
    return abs(best_net - other_net) / floor * 100.0


def select_route(quotes: List[Quote], failures: Dict[str, str]) -> RoutingDecision:
    """
    Pick the venue with the highest net price

    Args:
        quotes: Successful quotes, in venue configuration order
        failures: Venue name -> failure reason for venues that did not quote

    Raises:
        LiquidityUnavailableError: no quotes at all
    """
    if not quotes:
        raise LiquidityUnavailableError(failures)

    if len(quotes) == 1:
        selected = quotes[0]
        missing = ", ".join(sorted(failures)) or "other venues"
        return RoutingDecision(
            selected_venue=selected.venue,
            selected_quote=selected,
            alternative_quote=None,
            reason=f"{missing} unavailable, using {selected.venue}",
            price_improvement=0.0,
            unavailable_venues=dict(failures)
        )

    # Stable sort keeps configuration order between equal net prices
    ranked = sorted(quotes, key=lambda quote: quote.net_price, reverse=True)
    best, runner_up = ranked[0], ranked[1]

    return RoutingDecision(
        selected_venue=best.venue,
        selected_quote=best,
        alternative_quote=runner_up,
        reason=(f"Better net price on {best.venue}: {best.net_price:.6f} vs "
                f"{runner_up.net_price:.6f} on {runner_up.venue}"),
        price_improvement=price_improvement(best.net_price, runner_up.net_price),
        unavailable_venues=dict(failures)
    )


class RouteSelector:
    """
    Quotes every venue concurrently and returns a RoutingDecision

    Stateless apart from counters; safe to share across workers.
    """

    def __init__(self, venues: Dict[str, VenueClient], config: Optional[RoutingConfig] = None,
                 latency_monitor: Optional[LatencyMonitor] = None):
        if not venues:
            raise ValueError("RouteSelector needs at least one venue")

        self.venues = dict(venues)
        self.config = config or RoutingConfig()
        self.latency_monitor = latency_monitor

        # Performance tracking
        self.total_routes = 0
        self.failed_routes = 0
        self.venue_failures: Dict[str, int] = {name: 0 for name in self.venues}
        self.venue_selections: Dict[str, int] = {name: 0 for name in self.venues}

    async def _quote_venue(self, name: str, venue: VenueClient, token_in: str,
                           token_out: str, amount: int) -> Quote:
        timeout = self.config.quote_timeout_seconds
        timer = self.latency_monitor.create_timer(f"quote_{name}") if self.latency_monitor else None
        if timer:
            timer.start()
        try:
            quote = await asyncio.wait_for(venue.quote(token_in, token_out, amount), timeout=timeout)
            if quote.venue != name:
                quote = replace(quote, venue=name)
            return quote
        except asyncio.TimeoutError:
            raise VenueTimeoutError(name, "quote", timeout)
        finally:
            if timer:
                self.latency_monitor.record_latency(name, "quote", timer.stop())

    async def get_all_quotes(self, token_in: str, token_out: str,
                             amount: int) -> Tuple[List[Quote], Dict[str, str]]:
        """
        Fetch quotes from all venues in parallel

        Returns:
            (successful quotes in venue order, venue -> failure reason)
        """
        names = list(self.venues)
        results = await asyncio.gather(
            *(self._quote_venue(name, self.venues[name], token_in, token_out, amount) for name in names),
            return_exceptions=True
        )

        quotes: List[Quote] = []
        failures: Dict[str, str] = {}
        for name, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failures[name] = str(result) or result.__class__.__name__
                self.venue_failures[name] += 1
                logger.warning(f"Quote from {name} failed for {token_in}-{token_out}: {failures[name]}")
            else:
                quotes.append(result)

        return quotes, failures

    async def get_best_route(self, token_in: str, token_out: str, amount: int) -> RoutingDecision:
        """
        Determine the best venue for a pair and amount

        Raises:
            LiquidityUnavailableError: every venue failed or timed out
        """
        quotes, failures = await self.get_all_quotes(token_in, token_out, amount)
        self.total_routes += 1

        try:
            decision = select_route(quotes, failures)
        except LiquidityUnavailableError:
            self.failed_routes += 1
            raise

        self.venue_selections[decision.selected_venue] += 1
        logger.info(f"Route {token_in}-{token_out} x{amount}: {decision.selected_venue} "
                    f"(+{decision.price_improvement:.4f}%) - {decision.reason}")
        return decision

    async def health_check(self) -> Dict[str, Any]:
        """Quote a reference pair at every venue and report availability"""
        token_in, token_out = self.config.health_check_pair
        quotes, failures = await self.get_all_quotes(token_in, token_out,
                                                     self.config.health_check_amount)
        available = {quote.venue for quote in quotes}
        venues = {name: name in available for name in self.venues}
        return {
            'venues': venues,
            'failures': failures,
            'overall': any(venues.values())
        }

    def get_performance_summary(self) -> Dict[str, Any]:
        """Get router performance summary"""
        success_rate = ((self.total_routes - self.failed_routes) / max(self.total_routes, 1)) * 100
        return {
            'total_routes': self.total_routes,
            'failed_routes': self.failed_routes,
            'success_rate_percent': success_rate,
            'venue_selections': dict(self.venue_selections),
            'venue_failures': dict(self.venue_failures)
        }
