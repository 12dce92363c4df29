import logging

from fastapi.testclient import TestClient

from app.core.conversation_store import InMemoryConversationStore
from app.core.converter import MessageConverter
from app.main import app


def test_startup_wires_services(monkeypatch, tmp_path):
    monkeypatch.setenv("CONFIG_FILE", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("DIFY_API_KEY", "k")
    monkeypatch.setenv("DIFY_BASE_URL", "http://dify.test")
    monkeypatch.setenv("DIFY_BOT_TYPE", "completion")
    monkeypatch.setenv("WECHAT_WEBHOOK_URL", "https://wecom.test/send?key=abc")

    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    try:
        with TestClient(app) as client:
            assert isinstance(app.state.converter, MessageConverter)
            assert isinstance(app.state.store, InMemoryConversationStore)
            assert app.state.settings.dify_bot_type == "completion"
            assert client.get("/does-not-exist").status_code == 404
    finally:
        root.handlers = saved_handlers
