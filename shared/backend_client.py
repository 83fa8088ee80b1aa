import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from shared.logging_config import log_backend_call
from shared.utils import NetworkError, ServerError

logger = logging.getLogger("storefront-service.backend")

# Called before every request; the identity provider owns caching and refresh.
TokenProvider = Callable[[], Awaitable[Optional[str]]]


async def no_token() -> Optional[str]:
    return None


def normalize_path(path: str) -> str:
    # Browser-side paths are written against the /api gateway prefix
    if path.startswith("/api/"):
        return path[len("/api"):]
    return path


def error_message(response: httpx.Response, payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
    if response.text:
        return response.text
    return f"HTTP {response.status_code} {response.reason_phrase}".strip()


class BackendClient:
    """Uniform JSON request function over the marketplace backend.

    Every call asks the token provider for a fresh bearer token. Non-2xx
    responses raise ServerError carrying the backend's message, transport
    failures raise NetworkError. Nothing is retried.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_provider: TokenProvider = no_token,
        request_id: Optional[str] = None,
    ):
        self._http = http
        self._token_provider = token_provider
        self.request_id = request_id

    def current_request_id(self) -> Optional[str]:
        return self.request_id

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        files: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        method = method.upper()
        path = normalize_path(path)

        headers = {}
        token = await self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        request_id = self.current_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id

        kwargs = {"headers": headers}
        if params:
            kwargs["params"] = params
        if files is not None:
            # multipart: httpx sets the boundary header itself
            kwargs["files"] = files
            if body is not None:
                kwargs["data"] = body
        elif isinstance(body, (bytes, bytearray)):
            kwargs["content"] = bytes(body)
        elif body is not None:
            kwargs["json"] = body

        started = time.time()
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.RequestError as e:
            log_backend_call(logger, method, path, None, started, request_id)
            raise NetworkError(f"Network error calling {path}: {e}") from e

        log_backend_call(logger, method, path, response.status_code, started, request_id)

        text = response.text
        payload = None
        if text:
            try:
                payload = response.json()
            except ValueError:
                payload = None

        if not response.is_success:
            message = error_message(response, payload)
            raise ServerError(f"{message} (HTTP {response.status_code})", backend_status=response.status_code)

        if payload is not None:
            return payload
        return text or None

    async def get(self, path: str, params: Optional[dict] = None) -> Any:
        return await self.request(path, "GET", params=params)

    async def post(self, path: str, body: Any = None) -> Any:
        return await self.request(path, "POST", body=body)

    async def put(self, path: str, body: Any = None) -> Any:
        return await self.request(path, "PUT", body=body)

    async def patch(self, path: str, body: Any = None) -> Any:
        return await self.request(path, "PATCH", body=body)

    async def delete(self, path: str, body: Any = None) -> Any:
        return await self.request(path, "DELETE", body=body)
