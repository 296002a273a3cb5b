"""
Run the execution engine against simulated venues and print each order's status stream.

Usage:
    python scripts/run_demo.py [number_of_orders]
"""

import asyncio
import sys

from loguru import logger

from swap_execution.config import load_config, configure_logging
from swap_execution.execution_engine import ExecutionEngine
from swap_execution.order_schemas import OrderStatus
from swap_execution.venue_client import default_venues

SAMPLE_ORDERS = [
    {'token_in': 'SOL', 'token_out': 'USDC', 'amount': 1_000_000_000, 'slippage': 0.01},
    {'token_in': 'USDC', 'token_out': 'SOL', 'amount': 250_000_000, 'slippage': 0.005},
    {'token_in': 'RAY', 'token_out': 'SOL', 'amount': 40_000_000, 'slippage': 0.02},
    {'token_in': 'SOL', 'token_out': 'USDT', 'amount': 500_000_000, 'slippage': 0.01},
    {'token_in': 'MNDE', 'token_out': 'SOL', 'amount': 75_000_000, 'slippage': 0.03},
]

TERMINAL = {OrderStatus.CONFIRMED.value, OrderStatus.FAILED.value}


async def follow(engine: ExecutionEngine, order_id: str) -> None:
    subscription = await engine.subscribe_status(order_id)
    try:
        async for event in subscription:
            details = ", ".join(f"{key}={value}" for key, value in event.data.items()
                                if key != 'routing_decision')
            print(f"  {order_id[:8]}  {event.status:<10} {details}")
            if event.status in TERMINAL:
                break
    finally:
        await engine.unsubscribe(subscription)


async def run_demo(order_count: int) -> None:
    config = load_config()
    engine = ExecutionEngine(config.engine, venues=default_venues(seed=7))
    await engine.start()

    try:
        followers = []
        for index in range(order_count):
            request = SAMPLE_ORDERS[index % len(SAMPLE_ORDERS)]
            accepted = await engine.submit(request)
            print(f"📥 Submitted {request['token_in']} -> {request['token_out']} as {accepted['order_id']}")
            followers.append(asyncio.create_task(follow(engine, accepted['order_id'])))

        await asyncio.gather(*followers)

        stats = await engine.execution_stats()
        print("\n📊 Execution summary")
        print(f"   Orders: {stats['total_orders']}")
        print(f"   Success rate: {stats['success_rate']:.1f}%")
        print(f"   Average execution time: {stats['average_execution_time_ms']:.1f} ms")
        print(f"   Status breakdown: {stats['status_breakdown']}")
    finally:
        await engine.stop()


if __name__ == "__main__":
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 5
    configure_logging("WARNING")
    logger.info("Starting demo")
    asyncio.run(run_demo(count))
