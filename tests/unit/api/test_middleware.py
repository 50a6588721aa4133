"""Tests for the HTTP request auditing middleware."""

import threading

import pytest
from fastapi import HTTPException, Response
from fastapi.testclient import TestClient

from auditlog.api import create_app
from auditlog.api.middleware import (
    action_for_method,
    level_for_status,
    matches_route,
    resource_from_path,
)
from auditlog.audit.config import create_audit_logger
from auditlog.audit.schemas import ActorType, AuditAction, AuditLevel


@pytest.fixture
def audit_logger():
    audit_logger = create_audit_logger(
        "sqlite", config={"batch_size": 1, "flush_interval_ms": 0}, database=":memory:"
    )
    yield audit_logger
    audit_logger.shutdown()


def build_client(audit_logger, **middleware_options) -> TestClient:
    app = create_app(audit_logger, shutdown_on_exit=False, **middleware_options)

    @app.get("/api/v1/notes")
    def list_notes():
        return []

    @app.post("/api/v1/notes", status_code=201)
    def create_note():
        return {"id": "n1"}

    @app.delete("/api/v1/notes/{note_id}")
    def delete_note(note_id: str):
        return Response(status_code=204)

    @app.put("/api/v1/notes/{note_id}")
    def update_note(note_id: str):
        raise HTTPException(status_code=404, detail="Note not found")

    @app.post("/api/internal/jobs")
    def run_job():
        return {"ok": True}

    @app.post("/boom")
    def boom():
        raise RuntimeError("handler failed")

    return TestClient(app, raise_server_exceptions=False)


def recorded(audit_logger):
    return audit_logger.query().items


class TestRecording:
    """Test which requests are recorded and how."""

    def test_records_write_request(self, audit_logger):
        """Test a POST becomes a create event with request context."""
        client = build_client(audit_logger)
        response = client.post(
            "/api/v1/notes",
            json={"title": "x"},
            headers={"X-Request-ID": "req_test", "User-Agent": "pytest-agent"},
        )
        assert response.status_code == 201

        events = recorded(audit_logger)
        assert len(events) == 1
        event = events[0]
        assert event.action == AuditAction.CREATE
        assert event.resource == "notes"
        assert event.resource_id is None
        assert event.level == AuditLevel.INFO
        assert event.success is True
        assert event.description == "POST /api/v1/notes - 201"
        assert event.actor_id == "anonymous"
        assert event.actor_type == ActorType.ANONYMOUS
        assert event.context.request_id == "req_test"
        assert event.context.user_agent == "pytest-agent"
        assert event.context.status_code == 201
        assert event.context.endpoint == "/api/v1/notes"
        assert event.metadata["method"] == "POST"
        assert event.metadata["pathname"] == "/api/v1/notes"
        assert event.metadata["duration_ms"] >= 0

    def test_resource_id_from_path(self, audit_logger):
        """Test DELETE derives the resource id from the path."""
        client = build_client(audit_logger)
        client.delete("/api/v1/notes/n42")
        event = recorded(audit_logger)[0]
        assert event.action == AuditAction.DELETE
        assert (event.resource, event.resource_id) == ("notes", "n42")

    def test_reads_not_recorded(self, audit_logger):
        """Test GET requests are skipped by default."""
        client = build_client(audit_logger)
        client.get("/api/v1/notes")
        client.get("/health")
        assert recorded(audit_logger) == []

    def test_client_error_level(self, audit_logger):
        """Test 4xx responses are recorded as failed warnings."""
        client = build_client(audit_logger)
        response = client.put("/api/v1/notes/missing")
        assert response.status_code == 404
        event = recorded(audit_logger)[0]
        assert event.level == AuditLevel.WARN
        assert event.success is False
        assert event.action == AuditAction.UPDATE

    def test_server_error_recorded(self, audit_logger):
        """Test unhandled handler errors are recorded as 500."""
        client = build_client(audit_logger)
        response = client.post("/boom")
        assert response.status_code == 500
        event = recorded(audit_logger)[0]
        assert event.level == AuditLevel.ERROR
        assert event.context.status_code == 500
        assert event.resource == "boom"

    def test_log_runs_off_event_loop(self, audit_logger, monkeypatch):
        """Test the engine is called from a worker thread, not the event loop."""
        threads = {}
        original_log = audit_logger.log

        def log(*args, **kwargs):
            threads["log"] = threading.get_ident()
            return original_log(*args, **kwargs)

        monkeypatch.setattr(audit_logger, "log", log)
        app = create_app(audit_logger, shutdown_on_exit=False)

        @app.post("/api/v1/items")
        async def create_item():
            threads["loop"] = threading.get_ident()
            return {"id": "i1"}

        assert TestClient(app).post("/api/v1/items").status_code == 200
        assert threads["log"] != threads["loop"]
        assert [e.resource for e in recorded(audit_logger)] == ["items"]


class TestOptions:
    """Test middleware options."""

    def test_exclude_routes(self, audit_logger):
        """Test excluded globs are skipped."""
        client = build_client(audit_logger, exclude_routes=["/api/internal/**"])
        client.post("/api/internal/jobs")
        client.post("/api/v1/notes")
        assert [e.resource for e in recorded(audit_logger)] == ["notes"]

    def test_include_routes(self, audit_logger):
        """Test only included routes are recorded."""
        client = build_client(audit_logger, include_routes=["/api/internal"])
        client.post("/api/internal/jobs")
        client.post("/api/v1/notes")
        assert [e.resource for e in recorded(audit_logger)] == ["internal"]

    def test_methods(self, audit_logger):
        """Test the audited method set can be widened."""
        client = build_client(audit_logger, methods=["GET"])
        client.get("/api/v1/notes")
        client.post("/api/v1/notes")
        events = recorded(audit_logger)
        assert len(events) == 1
        assert events[0].action == AuditAction.READ

    def test_log_errors_disabled(self, audit_logger):
        """Test failed requests can be skipped."""
        client = build_client(audit_logger, log_errors=False)
        client.put("/api/v1/notes/missing")
        assert recorded(audit_logger) == []

    def test_log_success_disabled(self, audit_logger):
        """Test successful requests can be skipped."""
        client = build_client(audit_logger, log_success=False)
        client.post("/api/v1/notes")
        client.put("/api/v1/notes/missing")
        assert [e.success for e in recorded(audit_logger)] == [False]

    def test_actor_resolver(self, audit_logger):
        """Test a resolver supplies the actor."""

        def resolve(request):
            user = request.headers.get("x-user-id")
            return (user, "user") if user else None

        client = build_client(audit_logger, actor_resolver=resolve)
        client.post("/api/v1/notes", headers={"X-User-Id": "user_7"})
        event = recorded(audit_logger)[0]
        assert event.actor_id == "user_7"
        assert event.actor_type == ActorType.USER

    def test_async_resource_resolver(self, audit_logger):
        """Test awaitable resolvers are awaited."""

        async def resolve(request):
            return "notebook", "nb_1"

        client = build_client(audit_logger, resource_resolver=resolve)
        client.post("/api/v1/notes")
        event = recorded(audit_logger)[0]
        assert (event.resource, event.resource_id) == ("notebook", "nb_1")

    def test_resolver_failure_does_not_break_response(self, audit_logger):
        """Test errors while recording leave the response untouched."""

        def resolve(request):
            raise ValueError("no session")

        client = build_client(audit_logger, actor_resolver=resolve)
        response = client.post("/api/v1/notes")
        assert response.status_code == 201
        assert response.json() == {"id": "n1"}
        assert recorded(audit_logger) == []


class TestHelpers:
    """Test route matching and derivation helpers."""

    @pytest.mark.parametrize("path,pattern,expected", [
        ("/anything/at/all", "**", True),
        ("/api/users/1", "/api/users/*", True),
        ("/api/users/1/keys", "/api/users/*", False),
        ("/api/users/1/keys", "/api/users/**", True),
        ("/api/users", "/api/users", True),
        ("/api/users/1", "/api/users", True),
        ("/api/usersettings", "/api/users", False),
        ("/health", "/metrics", False),
    ])
    def test_matches_route(self, path, pattern, expected):
        """Test glob and prefix matching."""
        assert matches_route(path, pattern) is expected

    def test_resource_from_path(self):
        """Test api and version prefixes are skipped."""
        assert resource_from_path("/api/v2/notes/7") == ("notes", "7")
        assert resource_from_path("/notes") == ("notes", None)
        assert resource_from_path("/api") == ("http", None)
        assert resource_from_path("/") == ("http", None)

    def test_level_for_status(self):
        """Test status code to level mapping."""
        assert level_for_status(200) == AuditLevel.INFO
        assert level_for_status(302) == AuditLevel.INFO
        assert level_for_status(403) == AuditLevel.WARN
        assert level_for_status(503) == AuditLevel.ERROR

    def test_action_for_method(self):
        """Test method to action mapping."""
        assert action_for_method("patch") == AuditAction.UPDATE
        assert action_for_method("OPTIONS") == AuditAction.OTHER
