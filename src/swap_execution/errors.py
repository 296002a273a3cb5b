"""
Error taxonomy for the swap execution pipeline
"""

from typing import List, Optional


class SwapExecutionError(Exception):
    """Base exception for pipeline errors"""
    pass


class ValidationError(SwapExecutionError):
    """Malformed order submission"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid order request: " + "; ".join(self.errors))


class DuplicateAdmissionError(SwapExecutionError):
    """An order id already has a waiting or in-flight job"""

    def __init__(self, order_id: str, state: str):
        self.order_id = order_id
        self.state = state
        super().__init__(f"Order {order_id} is already {state}")


class LiquidityUnavailableError(SwapExecutionError):
    """Every venue failed to quote"""

    def __init__(self, failures: dict):
        self.failures = dict(failures)
        detail = ", ".join(f"{venue}: {reason}" for venue, reason in self.failures.items())
        super().__init__(f"No liquidity source available ({detail})")


class ExecutionError(SwapExecutionError):
    """The selected venue failed to execute the swap"""

    def __init__(self, venue: str, reason: str):
        self.venue = venue
        self.reason = reason
        super().__init__(f"Execution failed on {venue}: {reason}")


class CancellationRejectedError(SwapExecutionError):
    """Cancel attempted after processing started"""

    def __init__(self, order_id: str, status: Optional[str] = None):
        self.order_id = order_id
        self.status = status
        state = f" in {status} state" if status else " once processing has started"
        super().__init__(f"Cannot cancel order {order_id}{state}")


class OrderNotFoundError(SwapExecutionError):
    """Unknown order id"""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class InvalidTransitionError(SwapExecutionError):
    """Transition not allowed by the lifecycle graph"""

    def __init__(self, order_id: str, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id}: illegal transition {current} -> {target}")


class VenueError(SwapExecutionError):
    """A venue call failed"""

    def __init__(self, venue: str, message: str):
        self.venue = venue
        super().__init__(message)


class VenueTimeoutError(VenueError):
    """A venue call exceeded its timeout"""

    def __init__(self, venue: str, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(venue, f"{venue} {operation} timed out after {timeout:.1f}s")
