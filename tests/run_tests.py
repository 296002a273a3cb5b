"""
Test Runner for the Swap Execution Pipeline

Usage:
    python tests/run_tests.py                # Run all tests
    python tests/run_tests.py queue          # Run admission queue tests
    python tests/run_tests.py routing        # Run route selector and venue tests
    python tests/run_tests.py state          # Run state machine and schema tests
    python tests/run_tests.py broadcast      # Run status broadcaster tests
    python tests/run_tests.py engine         # Run execution engine tests
    python tests/run_tests.py gateway        # Run WebSocket gateway tests
    python tests/run_tests.py smoke          # Run quick smoke tests only
"""

import sys
import subprocess
import os
from pathlib import Path

def run_test_file(test_file: str) -> bool:
    """Run a single test file under pytest and return success status"""

    print(f"\n{'='*60}")
    print(f"🧪 Running {test_file}")
    print(f"{'='*60}")

    try:
        # Change to project root directory
        project_root = Path(__file__).parent.parent
        os.chdir(project_root)

        result = subprocess.run([sys.executable, "-m", "pytest", f"tests/{test_file}", "-q"],
                              capture_output=False, text=True)

        if result.returncode == 0:
            print(f"✅ {test_file} PASSED")
            return True
        else:
            print(f"❌ {test_file} FAILED")
            return False

    except OSError as e:
        print(f"❌ Error running {test_file}: {e}")
        return False

def run_test_category(category: str) -> dict:
    """Run tests for a specific category"""

    test_mapping = {
        'queue': ['test_admission_queue.py'],
        'routing': ['test_route_selector.py', 'test_latency_monitor.py'],
        'state': ['test_order_state_machine.py', 'test_order_store.py'],
        'broadcast': ['test_status_broadcaster.py'],
        'engine': ['test_execution_engine.py', 'test_config.py'],
        'gateway': ['test_websocket_gateway.py'],
        'smoke': ['test_order_state_machine.py', 'test_latency_monitor.py'],
        'all': [
            'test_order_state_machine.py',
            'test_order_store.py',
            'test_latency_monitor.py',
            'test_route_selector.py',
            'test_admission_queue.py',
            'test_status_broadcaster.py',
            'test_execution_engine.py',
            'test_websocket_gateway.py',
            'test_config.py'
        ]
    }

    if category not in test_mapping:
        print(f"❌ Unknown test category: {category}")
        print(f"Available categories: {list(test_mapping.keys())}")
        return {'total': 0, 'passed': 0, 'failed': 0}

    test_files = test_mapping[category]
    results = {'total': len(test_files), 'passed': 0, 'failed': 0}

    print(f"\n🎯 Running {category.upper()} tests ({len(test_files)} files)")

    for test_file in test_files:
        if run_test_file(test_file):
            results['passed'] += 1
        else:
            results['failed'] += 1

    return results

def print_summary(results: dict):
    """Print test summary"""

    print(f"\n{'='*60}")
    print("📊 TEST SUMMARY")
    print(f"{'='*60}")
    print(f"Total test files: {results['total']}")
    print(f"✅ Passed: {results['passed']}")
    print(f"❌ Failed: {results['failed']}")

    if results['total'] and results['failed'] == 0:
        print("\n🎉 ALL TESTS PASSED! 🎉")
    elif results['total']:
        success_rate = (results['passed'] / results['total']) * 100
        print(f"\n📈 Success rate: {success_rate:.1f}%")

    return results['total'] > 0 and results['failed'] == 0

def main():
    """Main test runner"""

    print("🧪 Swap Execution Pipeline - Test Runner")
    print("=" * 60)

    # Determine what to run
    if len(sys.argv) == 1:
        category = 'all'
    else:
        category = sys.argv[1].lower()

    results = run_test_category(category)
    success = print_summary(results)

    # Exit with appropriate code
    sys.exit(0 if success else 1)

if __name__ == "__main__":
    main()
