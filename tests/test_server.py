from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from assistant_server.llm import InferenceError
from assistant_server.memory import DiskConversationStore, Message, StoreError
from assistant_server.server import EMPTY_MESSAGE_ERROR, create_app


@pytest.fixture
def store(tmp_data_dir: Path) -> DiskConversationStore:
    return DiskConversationStore(str(tmp_data_dir))


@pytest.fixture
def client(config_file: Path, spy_model, store) -> TestClient:
    return TestClient(create_app(str(config_file), model=spy_model, store=store))


def test_chat_then_history_default_user(client: TestClient, spy_model):
    r = client.post("/api/chat", json={"message": "hi"})
    assert r.status_code == 200
    assert r.json() == {"response": spy_model.reply}

    h = client.get("/api/history")
    assert h.status_code == 200
    assert h.json() == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": spy_model.reply},
    ]


def test_chat_sends_system_prompt_and_full_history(client: TestClient, spy_model):
    client.post("/api/chat", json={"message": "first", "userId": "alice"})
    client.post("/api/chat", json={"message": "second", "userId": "alice"})

    assert spy_model.last_messages == [
        {"role": "system", "content": "You are a helpful personal assistant. Be concise and friendly."},
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": spy_model.reply},
        {"role": "user", "content": "second"},
    ]


def test_chat_trims_message(client: TestClient, store):
    client.post("/api/chat", json={"message": "  padded  ", "userId": "u"})
    assert store.read("u")[0] == Message("user", "padded")


@pytest.mark.parametrize("body", [{"message": ""}, {"message": "   "}, {"userId": "u"}, {}])
def test_chat_rejects_empty_message_without_touching_history(client: TestClient, store, spy_model, body):
    store.append("u", Message("user", "earlier"))
    store.append("default-user", Message("user", "earlier"))

    r = client.post("/api/chat", json=body)
    assert r.status_code == 400
    assert r.json() == {"error": EMPTY_MESSAGE_ERROR}
    assert store.read("u") == [Message("user", "earlier")]
    assert store.read("default-user") == [Message("user", "earlier")]
    assert spy_model.calls == []


def test_chat_without_body_is_rejected(client: TestClient):
    r = client.post("/api/chat")
    assert r.status_code == 400


def test_chat_with_invalid_json_is_rejected(client: TestClient):
    r = client.post("/api/chat", content=b"{oops", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert "error" in r.json()


def test_chat_with_non_string_message_is_rejected(client: TestClient):
    r = client.post("/api/chat", json={"message": 42})
    assert r.status_code == 400
    assert "error" in r.json()


def test_clear_then_history_is_empty(client: TestClient):
    client.post("/api/chat", json={"message": "hi"})
    r = client.post("/api/clear", json={})
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert client.get("/api/history").json() == []


def test_clear_accepts_missing_body(client: TestClient, store):
    store.append("default-user", Message("user", "x"))
    assert client.post("/api/clear").json() == {"success": True}
    assert store.read("default-user") == []


def test_histories_are_independent(client: TestClient):
    client.post("/api/chat", json={"message": "from A", "userId": "A"})
    client.post("/api/chat", json={"message": "from B", "userId": "B"})
    client.post("/api/clear", json={"userId": "B"})

    a = client.get("/api/history", params={"userId": "A"}).json()
    b = client.get("/api/history", params={"userId": "B"}).json()
    assert [m["content"] for m in a] == ["from A", "Hello from the assistant"]
    assert b == []
    assert client.get("/api/history").json() == []


def test_blank_user_id_falls_back_to_default(client: TestClient, store):
    client.post("/api/chat", json={"message": "hi", "userId": ""})
    assert len(store.read("default-user")) == 2
    assert len(client.get("/api/history", params={"userId": ""}).json()) == 2


def test_provider_failure_returns_500_and_keeps_user_turn(config_file: Path, store):
    class BrokenModel:
        def chat(self, messages):
            raise InferenceError("workers_ai returned HTTP 502: bad gateway")

    client = TestClient(create_app(str(config_file), model=BrokenModel(), store=store))
    r = client.post("/api/chat", json={"message": "hello", "userId": "x"})
    assert r.status_code == 500
    assert r.json() == {"error": "workers_ai returned HTTP 502: bad gateway"}
    assert store.read("x") == [Message("user", "hello")]


def test_missing_storage_short_circuits_every_route(tmp_path: Path, spy_model):
    cfg = tmp_path / "no-storage.yaml"
    cfg.write_text("memory:\n  data_dir:\n", encoding="utf-8")
    client = TestClient(create_app(str(cfg), model=spy_model))

    for method, path in [("get", "/"), ("post", "/api/chat"), ("get", "/api/history"), ("post", "/api/clear")]:
        r = getattr(client, method)(path)
        assert r.status_code == 503
        assert "storage" in r.json()["error"]
    assert spy_model.calls == []


def test_storage_dir_from_env_override(tmp_path: Path, spy_model, monkeypatch):
    data_dir = tmp_path / "env-data"
    monkeypatch.setenv("ASSISTANT_SERVER__MEMORY__DATA_DIR", str(data_dir))
    client = TestClient(create_app(str(tmp_path / "missing.yaml"), model=spy_model))

    assert client.post("/api/chat", json={"message": "hi"}).status_code == 200
    assert len(list(data_dir.glob("*.json"))) == 1


def test_unknown_route_and_wrong_method_are_404(client: TestClient):
    assert client.get("/nope").status_code == 404
    r = client.get("/api/chat")
    assert r.status_code == 404
    assert r.text == "Not found"
    assert client.post("/api/history").status_code == 404
    for path in ("/docs", "/redoc", "/openapi.json"):
        assert client.get(path).status_code == 404


def test_index_page_is_served(client: TestClient):
    for path in ("/", "/index.html"):
        r = client.get(path)
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/html")
        assert "/static/app.js" in r.text
    assert client.get("/static/app.js").status_code == 200


def test_cors_headers(client: TestClient):
    r = client.get("/api/history", headers={"Origin": "https://example.com"})
    assert r.headers["access-control-allow-origin"] == "*"

    pre = client.options(
        "/api/chat",
        headers={
            "Origin": "https://example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert pre.status_code == 200
    assert "POST" in pre.headers["access-control-allow-methods"]


def test_health_reports_provider(client: TestClient):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["provider"] == "spy"


def test_missing_model_credentials_only_disable_chat(config_file: Path, store):
    # Default provider is workers_ai; the clean env has no Cloudflare credentials.
    client = TestClient(create_app(str(config_file), store=store))

    r = client.post("/api/chat", json={"message": "hi"})
    assert r.status_code == 503
    assert "CLOUDFLARE_ACCOUNT_ID" in r.json()["error"]
    assert store.read("default-user") == []

    assert client.get("/").status_code == 200
    assert client.get("/api/history").json() == []
    assert client.post("/api/clear", json={}).json() == {"success": True}


def test_missing_storage_and_model_still_answers_503(tmp_path: Path):
    cfg = tmp_path / "bare.yaml"
    cfg.write_text("memory:\n  data_dir: ''\n", encoding="utf-8")
    client = TestClient(create_app(str(cfg)))

    r = client.get("/api/history")
    assert r.status_code == 503
    assert "storage" in r.json()["error"]


def test_uncreatable_storage_dir_answers_503(tmp_path: Path, spy_model):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    cfg = tmp_path / "blocked.yaml"
    cfg.write_text(f"memory:\n  data_dir: {(blocker / 'sub').as_posix()}\n", encoding="utf-8")
    client = TestClient(create_app(str(cfg), model=spy_model))

    r = client.post("/api/chat", json={"message": "hi"})
    assert r.status_code == 503
    assert "storage" in r.json()["error"]


def test_corrupt_conversation_gives_500_on_history(client: TestClient, store, tmp_data_dir: Path):
    store.append("broken", Message("user", "hello"))
    path = next(tmp_data_dir.glob("*.json"))
    path.write_text("{not json", encoding="utf-8")

    r = client.get("/api/history", params={"userId": "broken"})
    assert r.status_code == 500
    assert "Failed to read conversation file" in r.json()["error"]


def test_clear_store_failure_gives_500(config_file: Path, spy_model, store, monkeypatch):
    def fail(key):
        raise StoreError("disk full")

    monkeypatch.setattr(store, "clear", fail)
    client = TestClient(create_app(str(config_file), model=spy_model, store=store))

    r = client.post("/api/clear", json={"userId": "x"})
    assert r.status_code == 500
    assert r.json() == {"error": "disk full"}


def test_unexpected_error_is_rendered_as_json(config_file: Path, spy_model, store, monkeypatch):
    def boom(key):
        raise KeyError("partition")

    monkeypatch.setattr(store, "read", boom)
    client = TestClient(
        create_app(str(config_file), model=spy_model, store=store),
        raise_server_exceptions=False,
    )

    r = client.get("/api/history")
    assert r.status_code == 500
    assert r.json() == {"error": "'partition'"}


def test_plain_options_request_gets_cors_headers(client: TestClient):
    for path in ("/api/chat", "/api/history", "/anything"):
        r = client.options(path)
        assert r.status_code == 200
        assert r.headers["access-control-allow-origin"] == "*"
        assert "OPTIONS" in r.headers["access-control-allow-methods"]
        assert r.headers["access-control-allow-headers"] == "Content-Type"


def test_model_is_closed_on_shutdown(config_file: Path, store):
    class ClosableModel:
        provider = "closable"
        closed = False

        def chat(self, messages):
            return "ok"

        def close(self):
            self.closed = True

    model = ClosableModel()
    with TestClient(create_app(str(config_file), model=model, store=store)) as client:
        assert client.post("/api/chat", json={"message": "hi"}).status_code == 200
        assert model.closed is False
    assert model.closed is True
