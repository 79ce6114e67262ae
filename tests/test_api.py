"""Tests for the control API."""


class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["ok"] is True
        assert data["running"] is False
        assert "version" in data


class TestStatus:
    def test_status_before_start(self, client):
        resp = client.get("/api/status")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["attempt_count"] == 0
        assert data["current_delay_ms"] == 2000
        assert data["max_attempts"] == 10
        assert data["session"] is None
        assert data["engine"] == {}
        assert data["url"] == "/live"

    def test_status_reflects_failures(self, client, service):
        service.controller.start()
        service.controller.handle_failure()
        data = client.get("/api/status").get_json()
        assert data["attempt_count"] == 1
        assert data["retry_pending"] is True
        assert data["session"]["generation"] == 1
        assert data["engine"] == {"connected": True}

    def test_cors_headers(self, client):
        resp = client.get("/api/status")
        assert resp.headers["Access-Control-Allow-Origin"] == "*"


class TestReconnect:
    def test_reconnect_replaces_session(self, running_client, engine_factory):
        resp = running_client.post("/api/reconnect")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["ok"] is True
        # start() brought up generation 1 before the request reached the loop
        assert data["status"]["session"]["generation"] == 2
        assert len(engine_factory.engines) == 2
        assert engine_factory.engines[0].destroyed

    def test_reconnect_twice(self, running_client, engine_factory):
        running_client.post("/api/reconnect")
        data = running_client.post("/api/reconnect").get_json()
        assert data["status"]["session"]["generation"] == 3
        assert engine_factory.engines[1].destroyed

    def test_reconnect_resets_backoff(self, running_client, running_service):
        def fail_four_times():
            for _ in range(4):
                running_service.controller.handle_failure()
        running_service.call(fail_four_times)
        data = running_client.post("/api/reconnect").get_json()
        assert data["status"]["attempt_count"] == 0
        assert data["status"]["current_delay_ms"] == 2000
        assert data["status"]["retry_pending"] is False

    def test_reconnect_get_not_allowed(self, running_client):
        assert running_client.get("/api/reconnect").status_code == 405

    def test_reconnect_logged_as_event(self, running_client):
        running_client.post("/api/reconnect")
        types = [e["type"] for e in running_client.get("/api/events/recent").get_json()]
        assert "reconnect" in types
        assert "session" in types

    def test_reconnect_refused_without_player(self, client, engine_factory, service):
        resp = client.post("/api/reconnect")
        assert resp.status_code == 503
        assert resp.get_json() == {"error": "playback loop is not running"}
        assert engine_factory.engines == []
        assert service.owner.session is None
        assert service.controller.recreations == 0


class TestErrors:
    def test_unknown_route_404(self, client):
        assert client.get("/api/nope").status_code == 404

    def test_exception_becomes_json_500(self, client, service):
        def boom():
            raise RuntimeError("controller broke")
        service.controller.snapshot = boom
        resp = client.get("/api/status")
        assert resp.status_code == 500
        assert resp.get_json() == {"error": "controller broke"}
