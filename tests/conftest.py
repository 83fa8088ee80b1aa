import asyncio
import json
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SERVICE_DIR = os.path.join(ROOT, "services", "storefront-service")

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BACKEND_API_URL", "http://backend.test")

for path in (ROOT, SERVICE_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

import httpx
import pytest
from jose import jwt

BASE_URL = "http://backend.test"


class FakeBackend:
    """In-memory stand-in for the marketplace API.

    Routes map (method, path) to (status, payload) or to a callable taking the
    httpx.Request. Every request is recorded in `calls` as
    (method, path, json_body) in arrival order, with the request id and
    authorization headers of each call in `headers`; `completed` records the
    order in which responses were sent. A gate holds a route's response
    until it is released.
    """

    def __init__(self):
        self.calls = []
        self.headers = []
        self.completed = []
        self.routes = {}
        self.gates = {}

    def on(self, method, path, status=200, json=None, handler=None):
        self.routes[(method, path)] = handler if handler is not None else (status, json)

    def gate(self, method, path) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[(method, path)] = event
        return event

    async def handle(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, request.url.path, body))
        self.headers.append((request.headers.get("X-Request-ID"), request.headers.get("Authorization")))

        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()

        self.completed.append(key)
        route = self.routes.get(key)
        if route is None:
            return httpx.Response(404, json={"message": "Not found"})
        if callable(route):
            return route(request)
        status, payload = route
        if isinstance(payload, Exception):
            raise payload
        return httpx.Response(status, json=payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=BASE_URL, transport=self.transport)

    def mutations(self):
        return [(m, p, b) for (m, p, b) in self.calls if m != "GET"]


async def until(predicate, attempts: int = 200):
    """Let the event loop run until predicate() holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def make_token(sub: str = "user-1", **claims) -> str:
    return jwt.encode({"sub": sub, **claims}, "test-secret", algorithm="HS256")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def api(backend):
    from fastapi.testclient import TestClient
    from app.main import app

    app.state.transport = backend.transport
    with TestClient(app) as client:
        yield client
    del app.state.transport
