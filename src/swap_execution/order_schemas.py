"""
Order Schemas - Data structures for swap order execution

Plain dataclasses shared by every stage of the pipeline:
- OrderRequest: what a caller submits
- Order: the canonical lifecycle record of one swap
- Quote / RoutingDecision: venue pricing and the outcome of comparing it
- ExecutionResult: what a venue returns after settling a swap
- StatusEvent: the message fanned out to status subscribers
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
import uuid


MAX_SLIPPAGE = 0.5


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp"""
    return datetime.now(timezone.utc)


class OrderStatus(Enum):
    """Order lifecycle status"""
    PENDING = "pending"           # Accepted, waiting for a worker
    ROUTING = "routing"           # Comparing venue quotes
    BUILDING = "building"         # Venue selected, building the transaction
    SUBMITTED = "submitted"       # Sent to the venue
    CONFIRMED = "confirmed"       # Settled (terminal)
    FAILED = "failed"             # Failed or cancelled (terminal)

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.CONFIRMED, OrderStatus.FAILED)


@dataclass
class OrderRequest:
    """Market order request as received from the API layer"""

    token_in: str
    token_out: str
    amount: int                   # Smallest unit of token_in
    slippage: float               # Fraction, 0.01 == 1%

    def validate(self) -> List[str]:
        """Return the list of violated rules (empty when the request is well formed)"""
        errors = []

        if not isinstance(self.token_in, str) or not self.token_in:
            errors.append("token_in is required and must be a string")
        if not isinstance(self.token_out, str) or not self.token_out:
            errors.append("token_out is required and must be a string")
        if self.token_in == self.token_out:
            errors.append("token_in and token_out must be different")

        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            errors.append("amount is required and must be an integer")
        elif self.amount <= 0:
            errors.append("amount must be greater than 0")

        if isinstance(self.slippage, bool) or not isinstance(self.slippage, (int, float)):
            errors.append("slippage is required and must be a number")
        elif not 0 <= self.slippage <= MAX_SLIPPAGE:
            errors.append(f"slippage must be between 0 and {MAX_SLIPPAGE}")

        return errors

    @property
    def pair(self) -> str:
        return f"{self.token_in}-{self.token_out}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'token_in': self.token_in,
            'token_out': self.token_out,
            'amount': self.amount,
            'slippage': self.slippage
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderRequest":
        return cls(
            token_in=data.get('token_in'),
            token_out=data.get('token_out'),
            amount=data.get('amount'),
            slippage=data.get('slippage')
        )


@dataclass(frozen=True)
class Quote:
    """Venue-scoped price snapshot for a prospective swap"""

    venue: str
    price: float                  # Output units per input unit
    fee: float                    # Fraction
    slippage: float               # Estimated slippage fraction
    estimated_cost: float = 0.0   # Network cost estimate (gas / compute units)

    def __post_init__(self):
        if self.price <= 0:
            raise ValueError(f"Quote price must be positive, got {self.price}")
        if self.estimated_cost < 0:
            raise ValueError(f"Quote cost must be non-negative, got {self.estimated_cost}")

    @property
    def net_price(self) -> float:
        """Price adjusted downward for fee and slippage"""
        return self.price * (1 - self.fee - self.slippage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'venue': self.venue,
            'price': self.price,
            'fee': self.fee,
            'slippage': self.slippage,
            'estimated_cost': self.estimated_cost,
            'net_price': self.net_price
        }


@dataclass(frozen=True)
class ExecutionResult:
    """Settlement details returned by a venue"""

    tx_ref: str
    executed_price: float
    actual_amount: float
    cost: float
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tx_ref': self.tx_ref,
            'executed_price': self.executed_price,
            'actual_amount': self.actual_amount,
            'cost': self.cost,
            'timestamp': self.timestamp.isoformat()
        }


@dataclass(frozen=True)
class RoutingDecision:
    """Outcome of comparing quotes across venues"""

    selected_venue: str
    selected_quote: Quote
    alternative_quote: Optional[Quote]
    reason: str
    price_improvement: float = 0.0        # Percent, always >= 0
    unavailable_venues: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'selected_venue': self.selected_venue,
            'selected_quote': self.selected_quote.to_dict(),
            'alternative_quote': self.alternative_quote.to_dict() if self.alternative_quote else None,
            'reason': self.reason,
            'price_improvement': self.price_improvement,
            'unavailable_venues': dict(self.unavailable_venues)
        }


@dataclass
class Order:
    """
    Canonical lifecycle record of one swap order

    Status and the routing/execution fields are written only through
    OrderStateMachine; everything else is fixed at submission.
    """

    order_id: str
    token_in: str
    token_out: str
    amount: int
    slippage: float

    status: OrderStatus = OrderStatus.PENDING
    selected_venue: Optional[str] = None
    estimated_price: Optional[float] = None
    executed_price: Optional[float] = None
    tx_ref: Optional[str] = None
    error_message: Optional[str] = None

    created_at: datetime = None
    updated_at: datetime = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @classmethod
    def generate_order_id(cls) -> str:
        """Generate unique order ID"""
        return str(uuid.uuid4())

    @classmethod
    def from_request(cls, request: OrderRequest, order_id: Optional[str] = None) -> "Order":
        return cls(
            order_id=order_id or cls.generate_order_id(),
            token_in=request.token_in,
            token_out=request.token_out,
            amount=request.amount,
            slippage=request.slippage
        )

    def to_request(self) -> OrderRequest:
        return OrderRequest(self.token_in, self.token_out, self.amount, self.slippage)

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def copy(self) -> "Order":
        return Order(**{name: getattr(self, name) for name in self.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        """Convert order to dictionary for serialization"""
        return {
            'order_id': self.order_id,
            'token_in': self.token_in,
            'token_out': self.token_out,
            'amount': self.amount,
            'slippage': self.slippage,
            'status': self.status.value,
            'selected_venue': self.selected_venue,
            'estimated_price': self.estimated_price,
            'executed_price': self.executed_price,
            'tx_ref': self.tx_ref,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }

    def __str__(self) -> str:
        return (f"Order({self.order_id}: {self.amount} {self.token_in}->{self.token_out} "
                f"- {self.status.value})")


@dataclass
class StatusEvent:
    """
    Message delivered to status subscribers

    `status` is an OrderStatus value for lifecycle events, or one of the
    channel events: "connected", "pong", "cancelling", "error".
    """

    order_id: str
    status: str
    timestamp: datetime = field(default_factory=utc_now)
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_order(cls, order: Order) -> "StatusEvent":
        """Snapshot of an order's current state"""
        data = {
            'selected_venue': order.selected_venue,
            'estimated_price': order.estimated_price,
            'executed_price': order.executed_price,
            'tx_ref': order.tx_ref,
            'error_message': order.error_message
        }
        return cls(
            order_id=order.order_id,
            status=order.status.value,
            data={key: value for key, value in data.items() if value is not None}
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order_id': self.order_id,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'data': self.data
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusEvent":
        return cls(
            order_id=data['order_id'],
            status=data['status'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            data=dict(data.get('data') or {})
        )
