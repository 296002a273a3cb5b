"""
Tests package for the Swap Execution Pipeline

This package contains all test files organized by component.
"""

# Test organization:
# - test_order_state_machine.py: Lifecycle rules and order schemas
# - test_order_store.py: In-memory persistence
# - test_latency_monitor.py: Stage timing and alerts
# - test_route_selector.py: Venue quoting, net-price routing, simulated venues
# - test_admission_queue.py: Worker pool, rate limiting, retries
# - test_status_broadcaster.py: Subscriptions and fan-out
# - test_execution_engine.py: End-to-end pipeline scenarios
# - test_websocket_gateway.py: Status streams over WebSocket
# - test_config.py: Environment loading and logging setup
# - helpers.py: Deterministic venue doubles shared by the tests
