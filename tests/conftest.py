"""Shared fixtures"""

import pytest

from src.swap_execution.order_schemas import Order, OrderRequest

from tests.helpers import two_venues


@pytest.fixture
def sol_usdc_request():
    return OrderRequest(token_in="SOL", token_out="USDC", amount=1_000_000_000, slippage=0.01)


@pytest.fixture
def pending_order(sol_usdc_request):
    return Order.from_request(sol_usdc_request, order_id="order-1")


@pytest.fixture
def venues():
    return two_venues()
