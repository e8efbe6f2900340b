"""Test doubles: a manual clock and scripted provider endpoints."""

from collections.abc import Callable
from typing import Any

import httpx

START_TIME = 1_700_000_000.0
TEST_SECRET = "test-encryption-secret"


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def ms(self) -> int:
        return int(self.now * 1000)


Reply = Callable[[httpx.Request], httpx.Response]


def reply(status_code: int = 200, payload: Any = None) -> Reply:
    """Build a fresh JSON response for every call."""

    def build(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)

    return build


def fail(exc_factory: Callable[[], Exception]) -> Reply:
    def build(request: httpx.Request) -> httpx.Response:
        raise exc_factory()

    return build


class ProviderStub:
    """Scripted provider endpoints keyed by URL path.

    Each path holds a queue of replies; the last one repeats once the queue
    is down to one entry. Unscripted paths answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Reply]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, path: str, *replies: Reply) -> None:
        self.routes.setdefault(path, []).extend(replies)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"message": "Not Found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        return item(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


# GitHub and Google endpoint paths
GITHUB_DEVICE_PATH = "/login/device/code"
GITHUB_TOKEN_PATH = "/login/oauth/access_token"
GITHUB_USER_PATH = "/user"
GOOGLE_TOKEN_PATH = "/token"
GOOGLE_USERINFO_PATH = "/oauth2/v1/userinfo"


def device_code_payload(expires_in: int = 900, interval: int = 5) -> dict[str, Any]:
    return {
        "device_code": "dev-code-1",
        "user_code": "ABCD-1234",
        "verification_uri": "https://github.com/login/device",
        "expires_in": expires_in,
        "interval": interval,
    }
