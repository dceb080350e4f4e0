from __future__ import annotations

from pathlib import Path
import sys
from typing import Any, Callable, Dict, List, Union

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from baidu_xiling.services.client import BaiduApiClient
from baidu_xiling.utils.logging import configure_logging


BASE_URL = 'https://aip.test'

Route = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


configure_logging('DEBUG')


class FakeVendor:
    """Routes requests by path; the token endpoint answers on its own unless overridden."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, List[Route]] = {}
        self.issued_tokens = 0
        self.expires_in: Any = 2592000

    def add(self, path: str, *responses: Route) -> None:
        self.routes.setdefault(path, []).extend(responses)

    def calls(self, path: str) -> List[httpx.Request]:
        return [req for req in self.requests if req.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if queue:
            route = queue.pop(0) if len(queue) > 1 else queue[0]
            return route(request) if callable(route) else route
        if request.url.path == '/oauth/2.0/token':
            self.issued_tokens += 1
            body = {'access_token': f'token-{self.issued_tokens}'}
            if self.expires_in is not None:
                body['expires_in'] = self.expires_in
            return httpx.Response(200, json=body)
        return httpx.Response(404, json={'error_code': 404, 'error_msg': 'no route'})


@pytest.fixture
def vendor() -> FakeVendor:
    return FakeVendor()


@pytest.fixture
def make_client(vendor: FakeVendor):
    def factory(**kwargs: Any) -> BaiduApiClient:
        kwargs.setdefault('api_key', 'test-api-key')
        kwargs.setdefault('secret_key', 'test-secret-key')
        kwargs.setdefault('base_url', BASE_URL)
        return BaiduApiClient(transport=httpx.MockTransport(vendor), **kwargs)

    return factory


@pytest.fixture
def no_sleep():
    calls: List[float] = []

    async def sleep(seconds: float) -> None:
        calls.append(seconds)

    sleep.calls = calls
    return sleep
