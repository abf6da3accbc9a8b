import asyncio
import json
import sys
from http.cookies import SimpleCookie
from pathlib import Path
from typing import Any, Optional

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture(autouse=True)
def _no_network(monkeypatch):
    import advisor

    def _refuse(*args, **kwargs):
        raise requests.ConnectionError("network disabled in tests")

    monkeypatch.setattr(advisor.requests, "post", _refuse)


@pytest.fixture
def temp_db(tmp_path):
    from db import Database

    database = Database(str(tmp_path / "test.db")).connect()
    yield database
    database.close()


class ApiResponse:
    def __init__(self, status: int, headers: list[tuple[str, str]], body: bytes):
        self.status = status
        self.headers = headers
        self.body = body

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key == name:
                return value
        return None

    @property
    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8") or "{}")

    def cookie(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key != "set-cookie":
                continue
            jar = SimpleCookie()
            jar.load(value)
            if name in jar:
                return jar[name].value
        return None


def _multipart(files: dict[str, tuple[str, bytes, str]]) -> tuple[bytes, str]:
    boundary = "testboundary7MA4YWxkTrZu0gW"
    parts = []
    for field, (filename, content, content_type) in files.items():
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{field}"; filename="{filename}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n"
            ).encode()
            + content
            + b"\r\n"
        )
    parts.append(f"--{boundary}--\r\n".encode())
    return b"".join(parts), f"multipart/form-data; boundary={boundary}"


def _call(
    method: str,
    path: str,
    *,
    json_body: Any = None,
    cookies: Optional[dict[str, str]] = None,
    files: Optional[dict[str, tuple[str, bytes, str]]] = None,
    query: str = "",
) -> ApiResponse:
    import app

    async def _run():
        if files is not None:
            body, content_type = _multipart(files)
        elif json_body is not None:
            body, content_type = json.dumps(json_body).encode("utf-8"), "application/json"
        else:
            body, content_type = b"", None
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        headers = [
            (b"host", b"testserver"),
            (b"content-length", str(len(body)).encode()),
        ]
        if content_type:
            headers.append((b"content-type", content_type.encode()))
        if cookies:
            cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
            headers.append((b"cookie", cookie_header.encode()))

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": query.encode(),
            "headers": headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_run())
    status = 500
    response_headers: list[tuple[str, str]] = []
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
            response_headers = [
                (k.decode("latin-1").lower(), v.decode("latin-1"))
                for k, v in message.get("headers", [])
            ]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    return ApiResponse(status, response_headers, body_bytes)


@pytest.fixture
def api(temp_db, monkeypatch):
    """Drive the ASGI app in-process against a fresh database."""
    import app

    monkeypatch.setattr(app.app.state, "database", temp_db, raising=False)
    return _call


@pytest.fixture
def register_and_login(api):
    def _login(email: str = "student@example.com", password: str = "secret123", name: str = "Student"):
        created = api(
            "POST",
            "/api/auth/register",
            json_body={"name": name, "email": email, "phone": "0123456789", "password": password},
        )
        assert created.status == 201, created.json
        login = api("POST", "/api/auth/login", json_body={"email": email, "password": password})
        assert login.status == 200, login.json
        return {"auth-token": login.cookie("auth-token")}, created.json["user_id"]

    return _login
