import json

import httpx
import pytest

from app.core.config import Settings
from app.core.dify import DifyClient, MAX_RETRIES
from app.core.errors import (
    BackendProtocolError,
    ConfigurationError,
    ResponseDecodeError,
    TransportError,
)
from app.core.models import ChatRequest, CompletionRequest, FileAttachment, WorkflowRequest


def make_settings(**overrides):
    values = dict(
        dify_api_key="test-key",
        dify_base_url="http://dify.test",
        dify_default_role="Mitarbeiter",
    )
    values.update(overrides)
    return Settings(**values)


def make_client(handler, **overrides):
    transport = httpx.MockTransport(handler)
    return DifyClient(
        make_settings(**overrides),
        client=httpx.AsyncClient(transport=transport),
        retry_backoff=0,
    )


@pytest.mark.asyncio
async def test_chat_posts_blocking_request_with_default_role():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"answer": "hi there", "conversation_id": "conv-1"})

    dify = make_client(handler)
    response = await dify.chat(ChatRequest(user="u1", query="hello", response_mode="streaming"))

    assert response.answer == "hi there"
    assert response.conversation_id == "conv-1"
    assert len(seen) == 1
    request = seen[0]
    assert request.url.path == "/v1/chat-messages"
    assert request.headers["Authorization"] == "Bearer test-key"
    body = json.loads(request.content)
    assert body["query"] == "hello"
    assert body["conversation_id"] == ""
    assert body["response_mode"] == "blocking"
    assert body["inputs"] == {"role": "Mitarbeiter"}
    assert "files" not in body


@pytest.mark.asyncio
async def test_chat_keeps_existing_role_and_sends_files():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"answer": "ok"})

    dify = make_client(handler)
    await dify.chat(
        ChatRequest(
            user="u1",
            query="describe",
            inputs={"role": "Chef"},
            files=[FileAttachment(type="image", upload_file_id="file-1")],
        )
    )

    assert seen[0]["inputs"] == {"role": "Chef"}
    assert seen[0]["files"] == [
        {"type": "image", "transfer_method": "local_file", "upload_file_id": "file-1"}
    ]


@pytest.mark.asyncio
async def test_chat_empty_answer_is_protocol_error():
    dify = make_client(lambda request: httpx.Response(200, json={"answer": ""}))

    with pytest.raises(BackendProtocolError, match="no answer"):
        await dify.chat(ChatRequest(user="u1", query="hello"))


@pytest.mark.asyncio
async def test_error_status_decodes_dify_error_and_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(
            400, json={"code": "invalid_param", "message": "query is required", "status": 400}
        )

    dify = make_client(handler)
    with pytest.raises(BackendProtocolError) as info:
        await dify.chat(ChatRequest(user="u1", query="hello"))

    assert len(calls) == 1
    assert info.value.status_code == 400
    assert info.value.code == "invalid_param"
    assert info.value.backend_message == "query is required"


@pytest.mark.asyncio
async def test_error_status_with_unreadable_body_keeps_raw_text():
    dify = make_client(lambda request: httpx.Response(502, text="Bad Gateway"))

    with pytest.raises(BackendProtocolError) as info:
        await dify.complete(CompletionRequest(user="u1", prompt="hello"))

    assert info.value.status_code == 502
    assert info.value.code is None
    assert "Bad Gateway" in str(info.value)


@pytest.mark.asyncio
async def test_transport_errors_are_retried_up_to_the_bound():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    dify = make_client(handler)
    with pytest.raises(TransportError):
        await dify.chat(ChatRequest(user="u1", query="hello"))

    assert len(calls) == MAX_RETRIES


@pytest.mark.asyncio
async def test_transport_error_then_success():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("timeout", request=request)
        return httpx.Response(200, json={"text": "done"})

    dify = make_client(handler)
    response = await dify.complete(CompletionRequest(user="u1", prompt="hello"))

    assert response.text == "done"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_missing_credentials_fail_before_network():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"answer": "x"})

    dify = make_client(handler, dify_api_key="")
    with pytest.raises(ConfigurationError):
        await dify.chat(ChatRequest(user="u1", query="hello"))
    with pytest.raises(ConfigurationError):
        await dify.upload_file("/does/not/matter.png", "u1")

    assert calls == []


@pytest.mark.asyncio
async def test_undecodable_success_body_is_decode_error():
    dify = make_client(lambda request: httpx.Response(200, text="<html>ok</html>"))

    with pytest.raises(ResponseDecodeError):
        await dify.chat(ChatRequest(user="u1", query="hello"))


@pytest.mark.asyncio
async def test_completion_uses_completion_endpoint():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"text": "completed"})

    dify = make_client(handler)
    response = await dify.complete(CompletionRequest(user="u1", prompt="write"))

    assert response.text == "completed"
    assert seen[0].url.path == "/v1/completion-messages"
    body = json.loads(seen[0].content)
    assert body["prompt"] == "write"
    assert body["inputs"]["role"] == "Mitarbeiter"


@pytest.mark.asyncio
async def test_workflow_has_no_default_role_and_requires_data():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"outputs": {"result": 42}}})

    dify = make_client(handler)
    response = await dify.run_workflow(
        WorkflowRequest(user="u1", inputs={"query": "go"}, workflow_id="wf-1")
    )

    assert response.data == {"outputs": {"result": 42}}
    assert seen[0]["inputs"] == {"query": "go"}
    assert seen[0]["workflow_id"] == "wf-1"
    assert seen[0]["response_mode"] == "blocking"

    empty = make_client(lambda request: httpx.Response(200, json={"workflow_run_id": "r1"}))
    with pytest.raises(BackendProtocolError, match="no data"):
        await empty.run_workflow(WorkflowRequest(user="u1", inputs={"query": "go"}))


@pytest.mark.asyncio
async def test_upload_sends_multipart_file_and_user(tmp_path):
    upload = tmp_path / "photo.png"
    upload.write_bytes(b"\x89PNG fake")
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "file-123", "name": "photo.png"})

    dify = make_client(handler)
    response = await dify.upload_file(str(upload), "u1")

    assert response["id"] == "file-123"
    request = seen[0]
    assert request.url.path == "/v1/files/upload"
    assert request.headers["Content-Type"].startswith("multipart/form-data")
    content = request.content
    assert b'name="file"; filename="photo.png"' in content
    assert b"\x89PNG fake" in content
    assert b'name="user"' in content
    assert b"u1" in content


@pytest.mark.asyncio
async def test_download_streams_body_to_file(tmp_path):
    target = tmp_path / "out.png"
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=b"image-bytes")

    dify = make_client(handler)
    await dify.download_file("http://files.test/y.png", str(target))

    assert target.read_bytes() == b"image-bytes"
    assert "Authorization" not in seen[0].headers


@pytest.mark.asyncio
async def test_download_error_status_is_terminal(tmp_path):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, text="not found")

    dify = make_client(handler)
    with pytest.raises(BackendProtocolError) as info:
        await dify.download_file("http://files.test/y.png", str(tmp_path / "out.png"))

    assert info.value.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_backoff_grows_with_attempt_number(monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr("app.core.dify._sleep", fake_sleep)

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    dify = DifyClient(
        make_settings(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_backoff=0.5,
    )
    with pytest.raises(TransportError):
        await dify.chat(ChatRequest(user="u1", query="hello"))

    # Nach dem letzten Versuch wird nicht mehr gewartet
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retried_upload_resends_whole_file(tmp_path):
    source = tmp_path / "report.txt"
    source.write_bytes(b"full report body")
    bodies = []

    def handler(request):
        bodies.append(request.content)
        if len(bodies) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(201, json={"id": "file-7"})

    dify = make_client(handler)
    response = await dify.upload_file(str(source), "u1")

    assert response["id"] == "file-7"
    assert len(bodies) == 2
    assert b"full report body" in bodies[0]
    assert b"full report body" in bodies[1]


@pytest.mark.asyncio
async def test_download_invalid_url_is_transport_error(tmp_path):
    def handler(request):
        raise httpx.InvalidURL("Invalid IPv6 URL")

    dify = make_client(handler)
    with pytest.raises(TransportError):
        await dify.download_file("http://[bad/y.png", str(tmp_path / "out.png"))
