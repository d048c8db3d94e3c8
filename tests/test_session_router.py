from __future__ import annotations

import asyncio
import threading
import time
import uuid
from typing import Any, Dict, Iterator, List

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from mcp_session_server.core.config import LATEST_PROTOCOL_VERSION, SESSION_HEADER
from mcp_session_server.core.session import SessionId, SessionRegistry
from mcp_session_server.main import create_app

STREAMABLE_ACCEPT = {"Accept": "application/json, text/event-stream"}

NO_VALID_SESSION_BODY = {
    "jsonrpc": "2.0",
    "error": {"code": -32000, "message": "Bad Request: No valid session ID provided"},
    "id": None,
}


def _initialize_payload(request_id: Any = 1) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "pytest", "version": "1.0"},
        },
    }


def _initialize(client: TestClient) -> str:
    response = client.post("/mcp", json=_initialize_payload())
    assert response.status_code == 200, response.text
    return response.headers[SESSION_HEADER]


def _registry(app: FastAPI) -> SessionRegistry:
    return app.state.session_router.registry


@pytest.fixture
def app() -> FastAPI:
    return create_app()


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, headers=STREAMABLE_ACCEPT) as test_client:
        yield test_client


def test_initialize_creates_session_and_returns_header(app: FastAPI, client: TestClient) -> None:
    response = client.post("/mcp", json=_initialize_payload())

    assert response.status_code == 200
    session_id = response.headers[SESSION_HEADER]
    uuid.UUID(session_id)

    payload = response.json()
    assert payload["id"] == 1
    assert payload["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION
    assert payload["result"]["serverInfo"]["name"] == "example-server"
    assert SessionId(session_id) in _registry(app)


def test_initialize_assigns_distinct_ids(app: FastAPI, client: TestClient) -> None:
    session_ids = {_initialize(client) for _ in range(5)}

    assert len(session_ids) == 5
    assert {str(sid) for sid in _registry(app).ids()} == session_ids


def test_session_header_reaches_same_session(app: FastAPI, client: TestClient) -> None:
    session_id = _initialize(client)
    session = _registry(app).lookup(SessionId(session_id))
    assert session is not None

    list_response = client.post(
        "/mcp",
        headers={SESSION_HEADER: session_id},
        json={"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
    )
    assert list_response.status_code == 200
    assert list_response.headers[SESSION_HEADER] == session_id
    tool_names = [tool["name"] for tool in list_response.json()["result"]["tools"]]
    assert tool_names == ["echo"]

    call_response = client.post(
        "/mcp",
        headers={SESSION_HEADER: session_id},
        json={
            "jsonrpc": "2.0",
            "id": 3,
            "method": "tools/call",
            "params": {"name": "echo", "arguments": {"message": "hi"}},
        },
    )
    assert call_response.status_code == 200
    assert call_response.json()["result"]["content"] == [{"type": "text", "text": "Tool echo: hi"}]

    # Тот же объект сессии: движок помнит клиента из handshake.
    assert _registry(app).lookup(SessionId(session_id)) is session
    assert session.engine.client_info == {"name": "pytest", "version": "1.0"}


def test_session_header_is_case_insensitive(client: TestClient) -> None:
    session_id = _initialize(client)

    response = client.post(
        "/mcp",
        headers={"Mcp-Session-Id": session_id},
        json={"jsonrpc": "2.0", "id": 2, "method": "ping"},
    )

    assert response.status_code == 200
    assert response.json() == {"jsonrpc": "2.0", "result": {}, "id": 2}


def test_post_without_session_and_not_initialize_is_rejected(app: FastAPI, client: TestClient) -> None:
    response = client.post("/mcp", json={"jsonrpc": "2.0", "id": 7, "method": "tools/list"})

    assert response.status_code == 400
    assert response.json() == NO_VALID_SESSION_BODY
    assert SESSION_HEADER not in response.headers
    assert len(_registry(app)) == 0


@pytest.mark.parametrize(
    "payload",
    [
        {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"capabilities": {}}},
        {**_initialize_payload(), "jsonrpc": "1.0"},
        {key: value for key, value in _initialize_payload().items() if key != "id"},
        [_initialize_payload()],
        "initialize",
    ],
)
def test_malformed_initialize_is_rejected(app: FastAPI, client: TestClient, payload: Any) -> None:
    response = client.post("/mcp", json=payload)

    assert response.status_code == 400
    assert response.json() == NO_VALID_SESSION_BODY
    assert len(_registry(app)) == 0


def test_post_with_unknown_session_is_rejected(app: FastAPI, client: TestClient) -> None:
    response = client.post("/mcp", headers={SESSION_HEADER: "does-not-exist"}, json=_initialize_payload())

    assert response.status_code == 400
    assert response.json() == NO_VALID_SESSION_BODY
    assert len(_registry(app)) == 0


@pytest.mark.parametrize("method", ["GET", "DELETE"])
@pytest.mark.parametrize("headers", [{}, {SESSION_HEADER: "does-not-exist"}, {SESSION_HEADER: ""}])
def test_directive_without_live_session_is_rejected(
    client: TestClient, method: str, headers: Dict[str, str]
) -> None:
    response = client.request(method, "/mcp", headers={**headers, "Accept": "text/event-stream"})

    assert response.status_code == 400
    assert response.text == "Invalid or missing session ID"


def test_invalid_json_body_is_parse_error(app: FastAPI, client: TestClient) -> None:
    response = client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32700
    assert len(_registry(app)) == 0


def test_initialize_with_non_json_content_type_leaves_no_session(app: FastAPI, client: TestClient) -> None:
    body = b'{"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2025-06-18"}}'

    response = client.post("/mcp", content=body, headers={"Content-Type": "text/plain"})

    assert response.status_code == 415
    assert response.json()["error"]["code"] == -32000
    assert SESSION_HEADER not in response.headers
    assert len(_registry(app)) == 0


def test_initialize_without_streamable_accept_leaves_no_session(app: FastAPI, client: TestClient) -> None:
    response = client.post("/mcp", json=_initialize_payload(), headers={"Accept": "text/html"})

    assert response.status_code == 406
    assert response.json()["error"]["message"].startswith("Not Acceptable")
    assert SESSION_HEADER not in response.headers
    assert len(_registry(app)) == 0

    assert _initialize(client)
    assert len(_registry(app)) == 1


def test_continue_with_non_json_content_type_keeps_session(app: FastAPI, client: TestClient) -> None:
    session_id = _initialize(client)

    response = client.post(
        "/mcp",
        content=b'{"jsonrpc": "2.0", "id": 2, "method": "ping"}',
        headers={SESSION_HEADER: session_id, "Content-Type": "text/plain"},
    )

    assert response.status_code == 415
    assert SessionId(session_id) in _registry(app)


def test_missing_session_is_rejected_before_header_checks(client: TestClient) -> None:
    response = client.post(
        "/mcp",
        content=b'{"jsonrpc": "2.0", "id": 1, "method": "ping"}',
        headers={"Content-Type": "text/plain", "Accept": "text/html"},
    )

    assert response.status_code == 400
    assert response.json() == NO_VALID_SESSION_BODY


def test_reinitialize_on_live_session_is_rejected_by_transport(app: FastAPI, client: TestClient) -> None:
    session_id = _initialize(client)

    response = client.post("/mcp", headers={SESSION_HEADER: session_id}, json=_initialize_payload(2))

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Invalid Request: Server already initialized"
    assert len(_registry(app)) == 1


def test_notification_is_accepted_without_body(client: TestClient) -> None:
    session_id = _initialize(client)

    response = client.post(
        "/mcp",
        headers={SESSION_HEADER: session_id},
        json={"jsonrpc": "2.0", "method": "notifications/initialized"},
    )

    assert response.status_code == 202
    assert response.content == b""


def test_delete_removes_session(app: FastAPI, client: TestClient) -> None:
    session_id = _initialize(client)
    headers = {SESSION_HEADER: session_id}

    response = client.delete("/mcp", headers=headers)
    assert response.status_code == 200
    assert SessionId(session_id) not in _registry(app)

    # Удалённый идентификатор ведёт себя как неизвестный.
    post_after = client.post("/mcp", headers=headers, json={"jsonrpc": "2.0", "id": 9, "method": "ping"})
    assert post_after.status_code == 400
    assert post_after.json() == NO_VALID_SESSION_BODY

    delete_again = client.delete("/mcp", headers=headers)
    assert delete_again.status_code == 400
    assert delete_again.text == "Invalid or missing session ID"


def test_delete_leaves_other_sessions_untouched(app: FastAPI, client: TestClient) -> None:
    first = _initialize(client)
    second = _initialize(client)

    client.delete("/mcp", headers={SESSION_HEADER: first})

    response = client.post("/mcp", headers={SESSION_HEADER: second}, json={"jsonrpc": "2.0", "id": 1, "method": "ping"})
    assert response.status_code == 200
    assert [str(sid) for sid in _registry(app).ids()] == [second]


def test_session_id_collision_does_not_replace_live_session() -> None:
    app = create_app(id_generator=lambda: "fixed-id")
    with TestClient(app, headers=STREAMABLE_ACCEPT) as local_client:
        assert _initialize(local_client) == "fixed-id"
        original = _registry(app).lookup(SessionId("fixed-id"))

        response = local_client.post("/mcp", json=_initialize_payload(42))

        assert response.status_code == 500
        assert response.json()["error"]["code"] == -32001
        assert response.json()["id"] == 42
        assert _registry(app).lookup(SessionId("fixed-id")) is original
        assert not original.transport.closed

        ping = local_client.post(
            "/mcp",
            headers={SESSION_HEADER: "fixed-id"},
            json={"jsonrpc": "2.0", "id": 1, "method": "ping"},
        )
        assert ping.status_code == 200


def test_concurrent_continue_keeps_other_sessions_reachable(app: FastAPI) -> None:
    async def scenario() -> None:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport, base_url="http://testserver", headers=STREAMABLE_ACCEPT
        ) as http:
            init_a = await http.post("/mcp", json=_initialize_payload())
            init_b = await http.post("/mcp", json=_initialize_payload())
            session_a = init_a.headers[SESSION_HEADER]
            session_b = init_b.headers[SESSION_HEADER]

            def echo(index: int) -> Dict[str, Any]:
                return {
                    "jsonrpc": "2.0",
                    "id": index,
                    "method": "tools/call",
                    "params": {"name": "echo", "arguments": {"message": f"m{index}"}},
                }

            calls = [http.post("/mcp", headers={SESSION_HEADER: session_a}, json=echo(i)) for i in range(10)]
            pings = [
                http.post("/mcp", headers={SESSION_HEADER: session_b}, json={"jsonrpc": "2.0", "id": i, "method": "ping"})
                for i in range(5)
            ]
            responses: List[httpx.Response] = await asyncio.gather(*calls, *pings)

            assert all(response.status_code == 200 for response in responses)
            for index, response in enumerate(responses[:10]):
                assert response.json()["result"]["content"][0]["text"] == f"Tool echo: m{index}"
            assert {response.headers[SESSION_HEADER] for response in responses[10:]} == {session_b}

            registry = _registry(app)
            assert len(registry) == 2
            assert {str(sid) for sid in registry.ids()} == {session_a, session_b}

    asyncio.run(scenario())


def test_end_to_end_stream_then_delete(app: FastAPI, client: TestClient) -> None:
    session_id = _initialize(client)
    headers = {SESSION_HEADER: session_id, "Accept": "text/event-stream"}
    session = _registry(app).lookup(SessionId(session_id))
    assert session is not None

    result: Dict[str, httpx.Response] = {}

    def _open_stream() -> None:
        result["response"] = client.get("/mcp", headers=headers)

    # GET-поток завершается только после закрытия транспорта, поэтому держим его в отдельном потоке.
    worker = threading.Thread(target=_open_stream, daemon=True)
    worker.start()
    deadline = time.monotonic() + 5
    while not session.transport.has_stream and time.monotonic() < deadline:
        time.sleep(0.01)
    assert session.transport.has_stream

    delete_response = client.delete("/mcp", headers={SESSION_HEADER: session_id})
    assert delete_response.status_code == 200

    worker.join(timeout=5)
    assert not worker.is_alive()
    stream_response = result["response"]
    assert stream_response.status_code == 200
    assert stream_response.headers["content-type"].startswith("text/event-stream")
    assert stream_response.text.startswith(": stream opened")
    assert SessionId(session_id) not in _registry(app)

    after = client.get("/mcp", headers=headers)
    assert after.status_code == 400
    assert after.text == "Invalid or missing session ID"


def test_health_reports_live_sessions(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok", "sessions": 0}
    _initialize(client)
    assert client.get("/health").json() == {"status": "ok", "sessions": 1}


def test_shutdown_closes_all_sessions() -> None:
    app = create_app()
    with TestClient(app, headers=STREAMABLE_ACCEPT) as client:
        _initialize(client)
        _initialize(client)
        assert len(_registry(app)) == 2

    assert len(_registry(app)) == 0
