#!/usr/bin/env python3
"""
Integration Test Suite for the Parts Storefront

Usage:
    1. Start the marketplace backend and the storefront service:
       uvicorn app.main:app --app-dir services/storefront-service --port 8000
    2. Export a bearer token issued by the identity provider:
       export STOREFRONT_TOKEN=...
    3. Install dependencies: pip install requests
    4. Run the script: python tests/integration_test.py

This script tests the full flow:
    - Catalog
    - Shopping Cart (add, set quantity, remove)
    - Checkout redirect
    - Community votes and comments
    - Negative Tests

Output:
    - Console logs with pass/fail status
    - integration_test_results.json report
"""
import requests
import json
import os
import time
import sys
from datetime import datetime, timezone
from typing import Dict, Any

# Configuration
BASE_URL = os.getenv("STOREFRONT_URL", "http://localhost:8000")
TOKEN = os.getenv("STOREFRONT_TOKEN", "")
RESULTS_FILE = "integration_test_results.json"

# Colors
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'

class TestRunner:
    def __init__(self):
        self.results = []
        self.session = requests.Session()
        self.store: Dict[str, Any] = {}
        self.start_time = time.time()

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {TOKEN}"}

    def log(self, message: str, color: str = Colors.ENDC):
        print(f"{color}{message}{Colors.ENDC}")

    def save_result(self, name: str, status: str, duration: float, error: str = None):
        self.results.append({
            "test_name": name,
            "status": status,
            "duration": duration,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })
        color = Colors.GREEN if status == "PASS" else Colors.FAIL
        self.log(f"[{status}] {name} ({duration:.4f}s)", color)
        if error:
            self.log(f"  Error: {error}", Colors.FAIL)

    def run_test(self, name: str, func, *args, **kwargs):
        start = time.time()
        try:
            func(*args, **kwargs)
            self.save_result(name, "PASS", time.time() - start)
        except AssertionError as e:
            self.save_result(name, "FAIL", time.time() - start, str(e))
        except Exception as e:
            self.save_result(name, "ERROR", time.time() - start, str(e))

    def assert_status(self, response, expected: int):
        if response.status_code != expected:
            raise AssertionError(f"Expected status {expected}, got {response.status_code}. Body: {response.text}")

    def save_report(self):
        with open(RESULTS_FILE, "w") as f:
            json.dump({
                "summary": {
                    "total": len(self.results),
                    "passed": len([r for r in self.results if r["status"] == "PASS"]),
                    "failed": len([r for r in self.results if r["status"] != "PASS"]),
                    "total_duration": time.time() - self.start_time
                },
                "results": self.results
            }, f, indent=2)
        self.log(f"\nTest results saved to {RESULTS_FILE}", Colors.BLUE)

# --- Test Functions ---

def test_health_check(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/health")
    runner.assert_status(resp, 200)
    if resp.json()["status"] != "healthy":
        raise AssertionError("Storefront is not healthy")

# Phase 1: Catalog

def load_catalog(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/catalog")
    runner.assert_status(resp, 200)
    entries = resp.json()["data"]
    if not entries:
        raise AssertionError("Catalog is empty")
    runner.store["sku"] = entries[0]["sku"]
    runner.store["unit_price"] = entries[0]["unit_price"]

# Phase 2: Cart

def add_to_cart(runner: TestRunner):
    data = {"sku": runner.store["sku"], "quantity": 2}
    resp = runner.session.post(f"{BASE_URL}/cart/items", json=data, headers=runner.headers)
    runner.assert_status(resp, 200)

def set_quantity(runner: TestRunner):
    sku = runner.store["sku"]
    resp = runner.session.put(f"{BASE_URL}/cart/items/{sku}", json={"quantity": 3}, headers=runner.headers)
    runner.assert_status(resp, 200)
    items = {i["sku"]: i for i in resp.json()["data"]["items"]}
    if items.get(sku, {}).get("quantity") != 3:
        raise AssertionError("Cart quantity mismatch after update")

def view_cart(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/cart", headers=runner.headers)
    runner.assert_status(resp, 200)
    data = resp.json()["data"]
    if not data["items"]:
        raise AssertionError("Cart is empty")
    expected = sum(i["unit_price"] * i["quantity"] for i in data["items"])
    if abs(data["totals"]["subtotal"] - expected) > 1e-6 and data["totals"]["tax"] == 0:
        raise AssertionError(f"Subtotal {data['totals']['subtotal']} does not match lines {expected}")

def remove_and_restore(runner: TestRunner):
    sku = runner.store["sku"]
    resp = runner.session.delete(f"{BASE_URL}/cart/items/{sku}", headers=runner.headers)
    runner.assert_status(resp, 200)
    if any(i["sku"] == sku for i in resp.json()["data"]["items"]):
        raise AssertionError("Removed item still in cart")
    # removing again is not an error
    resp = runner.session.delete(f"{BASE_URL}/cart/items/{sku}", headers=runner.headers)
    runner.assert_status(resp, 200)
    add_to_cart(runner)

# Phase 3: Checkout

def checkout(runner: TestRunner):
    resp = runner.session.post(f"{BASE_URL}/checkout", headers=runner.headers)
    runner.assert_status(resp, 200)
    if not resp.json()["data"]["url"].startswith("http"):
        raise AssertionError("Checkout did not return a redirect URL")

# Phase 4: Community

def list_posts(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/posts?sort=new", headers=runner.headers)
    runner.assert_status(resp, 200)
    posts = resp.json()["data"]
    if not posts:
        raise AssertionError("No posts to vote on")
    runner.store["post"] = posts[0]

def vote_post(runner: TestRunner):
    post = runner.store["post"]
    direction = -1 if post["my_vote"] == 1 else 1
    resp = runner.session.post(f"{BASE_URL}/posts/{post['id']}/vote", json={"direction": direction}, headers=runner.headers)
    runner.assert_status(resp, 200)
    state = resp.json()["data"]
    if state["vote_count"] != post["votes"] + direction:
        raise AssertionError(f"Vote count {state['vote_count']} after voting {direction} on {post['votes']}")

def comment_post(runner: TestRunner):
    post = runner.store["post"]
    text = f"Integration comment {int(time.time())}"
    resp = runner.session.post(f"{BASE_URL}/posts/{post['id']}/comments", json={"text": text}, headers=runner.headers)
    runner.assert_status(resp, 200)
    if not any(c["text"] == text for c in resp.json()["data"]):
        raise AssertionError("Comment not present after refetch")

# Phase 5: Negative Tests

def negative_tests(runner: TestRunner):
    # Invalid Token
    resp = runner.session.get(f"{BASE_URL}/cart", headers={"Authorization": "Bearer invalid_token"})
    if resp.status_code != 401:
        raise AssertionError(f"Expected 401 for invalid token, got {resp.status_code}")

    # Zero quantity add
    resp = runner.session.post(f"{BASE_URL}/cart/items", json={"sku": runner.store["sku"], "quantity": 0}, headers=runner.headers)
    if resp.status_code != 400:
        raise AssertionError(f"Expected 400 for zero quantity, got {resp.status_code}")


def main():
    if not TOKEN:
        print("STOREFRONT_TOKEN is not set")
        sys.exit(2)

    runner = TestRunner()
    runner.log("Starting Integration Tests...\n", Colors.HEADER)

    # 1. Health
    runner.run_test("Health Check", test_health_check, runner)

    # 2. Catalog
    runner.run_test("Load Catalog", load_catalog, runner)

    # 3. Cart
    runner.run_test("Add to Cart", add_to_cart, runner)
    runner.run_test("Set Quantity", set_quantity, runner)
    runner.run_test("View Cart", view_cart, runner)
    runner.run_test("Remove and Restore", remove_and_restore, runner)

    # 4. Checkout
    runner.run_test("Checkout", checkout, runner)

    # 5. Community
    runner.run_test("List Posts", list_posts, runner)
    runner.run_test("Vote", vote_post, runner)
    runner.run_test("Comment", comment_post, runner)

    # 6. Negative
    runner.run_test("Negative Tests", negative_tests, runner)

    runner.save_report()

    # Exit code
    if any(r["status"] != "PASS" for r in runner.results):
        sys.exit(1)

if __name__ == "__main__":
    main()
