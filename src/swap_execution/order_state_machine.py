"""
Order State Machine - Canonical lifecycle of one swap order

    pending -> routing -> building -> submitted -> confirmed
       |          |           |           |
       +----------+-----------+-----------+------> failed

Rules:
- Forward moves only; any non-terminal state may fail.
- Nothing leaves confirmed or failed.
- Moving to the current state is a no-op, not a transition.
- Cancellation is allowed only while pending.
- selected_venue / executed_price / tx_ref are set at most once.

Transitions are synchronous. Persistence and broadcasting of the resulting
events happen in the caller (see ExecutionEngine._apply).
"""

from dataclasses import dataclass
from typing import Dict, Optional, Any, FrozenSet

from .order_schemas import Order, OrderStatus, RoutingDecision, ExecutionResult, utc_now
from .errors import InvalidTransitionError, CancellationRejectedError


CANCELLED_BY_USER = "cancelled by user"

FORWARD_TRANSITIONS: Dict[OrderStatus, OrderStatus] = {
    OrderStatus.PENDING: OrderStatus.ROUTING,
    OrderStatus.ROUTING: OrderStatus.BUILDING,
    OrderStatus.BUILDING: OrderStatus.SUBMITTED,
    OrderStatus.SUBMITTED: OrderStatus.CONFIRMED,
}

# Fields the state machine may write, and which of them are write-once
MUTABLE_FIELDS: FrozenSet[str] = frozenset({
    'selected_venue', 'estimated_price', 'executed_price', 'tx_ref', 'error_message'
})
SET_ONCE_FIELDS: FrozenSet[str] = frozenset({'selected_venue', 'executed_price', 'tx_ref'})


def allowed_targets(status: OrderStatus) -> FrozenSet[OrderStatus]:
    """Statuses reachable in one step from `status`"""
    if status.is_terminal:
        return frozenset()
    return frozenset({FORWARD_TRANSITIONS[status], OrderStatus.FAILED})


@dataclass
class Transition:
    """A change applied by the state machine"""

    order_id: str
    previous: OrderStatus
    status: OrderStatus
    changes: Dict[str, Any]


class OrderStateMachine:
    """
    Lifecycle guard around a single Order

    The machine is the only writer of `status` and of the routing/execution
    fields; callers receive copies of the order through `snapshot()`.
    """

    def __init__(self, order: Order):
        self._order = order

    @property
    def order_id(self) -> str:
        return self._order.order_id

    @property
    def status(self) -> OrderStatus:
        return self._order.status

    @property
    def is_terminal(self) -> bool:
        return self._order.status.is_terminal

    def snapshot(self) -> Order:
        return self._order.copy()

    def can_transition(self, target: OrderStatus) -> bool:
        return target in allowed_targets(self._order.status)

    def transition(self, target: OrderStatus, **fields) -> Optional[Transition]:
        """
        Move to `target`, recording `fields` atomically with the status change

        Returns None when `target` is the current status.

        Raises:
            InvalidTransitionError: target not reachable, or a set-once field
                would be overwritten
        """
        current = self._order.status
        if target == current:
            return None

        if not self.can_transition(target):
            raise InvalidTransitionError(self.order_id, current.value, target.value)

        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable by the state machine: {sorted(unknown)}")

        for name in SET_ONCE_FIELDS.intersection(fields):
            existing = getattr(self._order, name)
            if existing is not None and existing != fields[name]:
                raise InvalidTransitionError(
                    self.order_id, current.value, f"{target.value} ({name} already set)"
                )

        changes = {name: value for name, value in fields.items() if value is not None}
        for name, value in changes.items():
            setattr(self._order, name, value)
        self._order.status = target
        self._order.updated_at = utc_now()

        return Transition(self.order_id, current, target, changes)

    def start_routing(self) -> Optional[Transition]:
        return self.transition(OrderStatus.ROUTING)

    def record_route(self, decision: RoutingDecision) -> Optional[Transition]:
        """routing -> building, recording the selected venue and its quoted price"""
        return self.transition(
            OrderStatus.BUILDING,
            selected_venue=decision.selected_venue,
            estimated_price=decision.selected_quote.price
        )

    def mark_submitted(self) -> Optional[Transition]:
        return self.transition(OrderStatus.SUBMITTED)

    def confirm(self, result: ExecutionResult) -> Optional[Transition]:
        return self.transition(
            OrderStatus.CONFIRMED,
            executed_price=result.executed_price,
            tx_ref=result.tx_ref
        )

    def fail(self, reason: str) -> Optional[Transition]:
        return self.transition(OrderStatus.FAILED, error_message=reason)

    def cancel(self) -> Transition:
        """
        pending -> failed with the user-cancellation reason

        Raises:
            CancellationRejectedError: order already left pending
        """
        if self._order.status != OrderStatus.PENDING:
            raise CancellationRejectedError(self.order_id, self._order.status.value)
        return self.fail(CANCELLED_BY_USER)
