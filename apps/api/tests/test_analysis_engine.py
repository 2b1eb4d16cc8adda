import json

import httpx
import pytest

from services.analysis_engine import EngineEvent, ShipableAnalysisEngine, parse_stream_line
from services.errors import EngineDispatchFailed

BASE_URL = "https://engine.test/v2"

REPORT_STREAM = (
    'data: {"body": "## Findings\\n"}\n\n'
    ": keep-alive\n\n"
    'data: {"body": "Unchecked call in withdraw()"}\n\n'
    'data: {"status": "complete"}\n\n'
    'data: {"body": "ignored after completion"}\n\n'
)


def _engine_transport(captured, *, playground_status=200, stream_body=REPORT_STREAM, session_payload=None):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        if request.url.path.endswith("/chat/sessions"):
            return httpx.Response(200, json=session_payload or {"data": {"key": "engine-key-1"}})
        if request.url.path.endswith("/chat/open-playground"):
            if playground_status >= 400:
                return httpx.Response(playground_status, text="engine overloaded")
            return httpx.Response(200, text=stream_body, headers={"content-type": "text/event-stream"})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def test_parse_stream_line():
    assert parse_stream_line('data: {"body": "chunk"}') == EngineEvent(kind="fragment", text="chunk")
    assert parse_stream_line('data: {"status": "Completed"}') == EngineEvent(kind="completed")
    assert parse_stream_line('data: {"status": "error", "message": "parse error"}') == EngineEvent(
        kind="failed", text="parse error"
    )
    assert parse_stream_line("event: ping") is None
    assert parse_stream_line("data: not-json") is None
    assert parse_stream_line('data: {"status": "thinking"}') is None


@pytest.mark.asyncio
async def test_dispatch_and_stream_report():
    captured = []
    engine = ShipableAnalysisEngine(
        base_url=BASE_URL, token="engine-token", transport=_engine_transport(captured)
    )

    handle = await engine.dispatch(code="contract Vault {}", language="solidity")
    events = [event async for event in engine.stream(handle)]

    assert handle.session_key == "engine-key-1"
    assert events == [
        EngineEvent(kind="fragment", text="## Findings\n"),
        EngineEvent(kind="fragment", text="Unchecked call in withdraw()"),
        EngineEvent(kind="completed"),
    ]
    assert handle.response.is_closed
    assert json.loads(captured[0].content) == {"source": "website"}
    playground_body = captured[1].content.decode("utf-8")
    assert '"sessionKey": "engine-key-1"' in playground_body
    assert '"stream": true' in playground_body
    assert "contract Vault {}" in playground_body


@pytest.mark.asyncio
async def test_dispatch_rejection_raises_before_streaming():
    engine = ShipableAnalysisEngine(
        base_url=BASE_URL, token="engine-token", transport=_engine_transport([], playground_status=503)
    )

    with pytest.raises(EngineDispatchFailed) as exc_info:
        await engine.dispatch(code="contract Vault {}", language="solidity")

    assert "503" in str(exc_info.value)
    assert "engine overloaded" in str(exc_info.value)


@pytest.mark.asyncio
async def test_dispatch_requires_session_key():
    engine = ShipableAnalysisEngine(
        base_url=BASE_URL, token="engine-token", transport=_engine_transport([], session_payload={"data": {}})
    )

    with pytest.raises(EngineDispatchFailed):
        await engine.dispatch(code="contract Vault {}", language="solidity")


@pytest.mark.asyncio
async def test_stream_ending_without_status_yields_fragments_only():
    engine = ShipableAnalysisEngine(
        base_url=BASE_URL,
        token="engine-token",
        transport=_engine_transport([], stream_body='data: {"body": "partial"}\n\n'),
    )

    handle = await engine.dispatch(code="contract Vault {}", language="solidity")
    events = [event async for event in engine.stream(handle)]

    assert events == [EngineEvent(kind="fragment", text="partial")]
