"""
Order Store - Persistence boundary for orders and their execution log

The pipeline only depends on the OrderStore interface. InMemoryOrderStore
backs local runs and tests; durable stores live outside this package.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any

from .order_schemas import Order, OrderStatus, utc_now


@dataclass
class ExecutionLogEntry:
    """One line of an order's execution log"""

    order_id: str
    event: str
    data: Dict[str, Any] = field(default_factory=dict)
    level: str = "info"
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order_id': self.order_id,
            'event': self.event,
            'data': self.data,
            'level': self.level,
            'timestamp': self.timestamp.isoformat()
        }


class OrderStore(ABC):
    """Persistence collaborator consumed by the execution engine"""

    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> Optional[Order]:
        """Apply a partial update; returns the stored order or None if unknown"""
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def append_execution_log(self, order_id: str, event: str,
                                   data: Optional[Dict[str, Any]] = None,
                                   level: str = "info") -> None:
        pass

    @abstractmethod
    async def get_recent_orders(self, limit: int = 1000) -> List[Order]:
        """Most recently created orders first"""
        pass


class InMemoryOrderStore(OrderStore):
    """Dictionary-backed store; returns copies so callers cannot mutate stored state"""

    def __init__(self, max_log_entries: int = 10000):
        self._orders: Dict[str, Order] = {}
        self._log: deque = deque(maxlen=max_log_entries)
        self._lock = asyncio.Lock()

    async def create_order(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise ValueError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = order.copy()
            return order.copy()

    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            for name, value in fields.items():
                if name == 'status' and not isinstance(value, OrderStatus):
                    value = OrderStatus(value)
                setattr(order, name, value)
            if 'updated_at' not in fields:
                order.updated_at = utc_now()
            return order.copy()

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.copy() if order else None

    async def append_execution_log(self, order_id: str, event: str,
                                   data: Optional[Dict[str, Any]] = None,
                                   level: str = "info") -> None:
        self._log.append(ExecutionLogEntry(order_id, event, dict(data or {}), level))

    async def get_recent_orders(self, limit: int = 1000) -> List[Order]:
        async with self._lock:
            orders = sorted(self._orders.values(), key=lambda order: order.created_at, reverse=True)
            return [order.copy() for order in orders[:limit]]

    def get_execution_log(self, order_id: Optional[str] = None) -> List[ExecutionLogEntry]:
        if order_id is None:
            return list(self._log)
        return [entry for entry in self._log if entry.order_id == order_id]
