import asyncio

import aiohttp

from patchsource.workflows import http_utils
from patchsource.workflows.http_utils import HttpResponse, megabytes_per_second


def _scripted_fetch(monkeypatch, statuses):
    calls = []

    async def fake_fetch(session, url, *, method="GET", headers=None, timeout=15, read_body=True):
        calls.append(method)
        status = statuses[method]
        if isinstance(status, Exception):
            raise status
        return HttpResponse(url=url, status=status)

    monkeypatch.setattr(http_utils, "fetch", fake_fetch)
    return calls


def test_ping_accepts_head_rejections_that_prove_the_endpoint_exists(monkeypatch) -> None:
    for status in (200, 400, 405, 422):
        calls = _scripted_fetch(monkeypatch, {"HEAD": status, "GET": 500})

        reachable, elapsed_ms = asyncio.run(http_utils.ping(None, "https://m.example/api"))

        assert reachable is True
        assert elapsed_ms >= 0
        assert calls == ["HEAD"]


def test_ping_falls_back_to_get(monkeypatch) -> None:
    calls = _scripted_fetch(monkeypatch, {"HEAD": 404, "GET": 200})

    reachable, _ = asyncio.run(http_utils.ping(None, "https://m.example/api"))

    assert reachable is True
    assert calls == ["HEAD", "GET"]

    calls = _scripted_fetch(monkeypatch, {"HEAD": 404, "GET": 503})

    reachable, _ = asyncio.run(http_utils.ping(None, "https://m.example/api"))

    assert reachable is False
    assert calls == ["HEAD", "GET"]


def test_ping_network_error_is_unreachable(monkeypatch) -> None:
    _scripted_fetch(monkeypatch, {"HEAD": aiohttp.ClientConnectionError("refused"), "GET": 200})

    assert asyncio.run(http_utils.ping(None, "https://m.example/api")) == (False, 0)


def test_megabytes_per_second() -> None:
    assert megabytes_per_second(5 * 1024 * 1024, 2.0) == 2.5
    assert megabytes_per_second(0, 1.0) == 0.0
    assert megabytes_per_second(1024, 0) == 0.0
