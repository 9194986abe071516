from typing import Any, AsyncIterator

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from attrs import Factory, define
from orjson import loads


@define
class Collector:
    """A fake OTLP/HTTP collector, answering with `statuses` in order."""

    url: str = ""
    requests: list[Any] = Factory(list)
    statuses: list[int] = Factory(list)

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(loads(await request.read()))
        status = self.statuses.pop(0) if self.statuses else 200
        return web.Response(status=status)

    def spans(self) -> list[Any]:
        return [
            span
            for request in self.requests
            for rs in request["resourceSpans"]
            for ss in rs["scopeSpans"]
            for span in ss["spans"]
        ]


@pytest.fixture
async def collector() -> AsyncIterator[Collector]:
    res = Collector()
    app = web.Application()
    app.router.add_post("/v1/traces", res.handle)
    async with TestServer(app) as server:
        res.url = str(server.make_url("/v1/traces"))
        yield res
