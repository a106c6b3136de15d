"""
Tests for the admin REST API.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from loopgate.main import create_app


@pytest.fixture
def client(test_settings):
    app = create_app(test_settings)
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "running_routes": 0, "listening_ports": []}

    def test_root_ca_created_on_startup(self, client):
        data = client.get("/api/ca").json()
        assert data["exists"] is True
        assert data["cert_path"].endswith("rootCA.crt")


class TestHostsAPI:
    def test_add_and_list(self, client):
        response = client.post("/api/hosts", json={"domain": "demo.local"})
        assert response.status_code == 200
        assert response.json()["success"] is True

        hosts = client.get("/api/hosts").json()["hosts"]
        demo = next(h for h in hosts if h["domain"] == "demo.local")
        assert demo["is_managed"] is True
        assert demo["is_disabled"] is False
        # Non-loopback entries are not listed
        assert all(h["ip"] in ("127.0.0.1", "::1") for h in hosts)

    def test_invalid_domain(self, client):
        response = client.post("/api/hosts", json={"domain": "not a domain"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_toggle(self, client):
        client.post("/api/hosts", json={"domain": "demo.local"})

        response = client.patch("/api/hosts/demo.local/toggle", json={"disabled": True})
        assert response.status_code == 200
        hosts = client.get("/api/hosts").json()["hosts"]
        assert next(h for h in hosts if h["domain"] == "demo.local")["is_disabled"] is True

        response = client.patch("/api/hosts/localhost/toggle", json={"disabled": True})
        assert response.status_code == 404

    def test_import_all(self, client):
        response = client.post("/api/hosts/import-all")
        assert response.status_code == 200
        assert response.json()["count"] == 2

        response = client.post("/api/hosts/import-all")
        assert response.status_code == 404

    def test_adopt(self, client):
        assert client.post("/api/hosts/localhost/adopt").status_code == 200
        assert client.post("/api/hosts/localhost/adopt").status_code == 404
        assert client.post("/api/hosts/missing.local/adopt").status_code == 404

    def test_delete_removes_certificate(self, client):
        client.post("/api/hosts", json={"domain": "demo.local"})
        client.post("/api/certificates", json={"domain": "demo.local"})

        response = client.delete("/api/hosts/demo.local")
        assert response.status_code == 200
        assert response.json()["certificate_removed"] is True
        assert client.get("/api/certificates/demo.local").status_code == 404

    def test_delete_foreign_host(self, client, unused_tcp_port):
        client.post(
            "/api/proxies",
            json={"domain": "localhost", "target": "localhost:3000", "port": unused_tcp_port},
        )
        assert client.post("/api/proxies/localhost/start").status_code == 200

        assert client.delete("/api/hosts/localhost").status_code == 404
        # The certificate and the running route are left in place
        assert client.get("/api/certificates/localhost").status_code == 200
        assert client.get("/api/status/localhost").json()["status"]["proxy_running"] is True

    def test_delete_stops_route(self, client, unused_tcp_port):
        client.post("/api/hosts", json={"domain": "demo.local"})
        client.post(
            "/api/proxies",
            json={"domain": "demo.local", "target": "localhost:3000", "port": unused_tcp_port},
        )
        client.post("/api/proxies/demo.local/start")

        response = client.delete("/api/hosts/demo.local")
        assert response.status_code == 200
        assert response.json()["certificate_removed"] is True
        assert client.get("/health").json()["running_routes"] == 0


class TestCertificatesAPI:
    def test_issue_get_delete(self, client):
        response = client.post("/api/certificates", json={"domain": "demo.local"})
        assert response.status_code == 200
        certificate = response.json()["certificate"]
        assert certificate["is_valid"] is True
        assert certificate["san"] == ["demo.local"]

        response = client.get("/api/certificates/demo.local")
        assert response.status_code == 200

        listed = client.get("/api/certificates").json()["certificates"]
        assert [c["domain"] for c in listed] == ["demo.local"]

        assert client.delete("/api/certificates/demo.local").status_code == 200
        assert client.delete("/api/certificates/demo.local").status_code == 404

    def test_missing_certificate(self, client):
        assert client.get("/api/certificates/never.local").status_code == 404

    def test_domain_status(self, client):
        client.post("/api/hosts", json={"domain": "demo.local"})
        status = client.get("/api/status/demo.local").json()["status"]
        assert status["host_configured"] is True
        assert status["certificate_valid"] is False
        assert status["is_valid"] is False

        client.post("/api/certificates", json={"domain": "demo.local"})
        status = client.get("/api/status/demo.local").json()["status"]
        assert status["certificate_valid"] is True
        assert status["is_valid"] is True
        assert status["proxy_running"] is False

    def test_install_ca(self, client):
        installer = MagicMock()
        installer.install = AsyncMock(return_value=(True, "installed"))
        client.app.state.trust_installer = installer

        response = client.post("/api/ca/install")
        assert response.status_code == 200
        assert response.json()["message"] == "installed"
        installer.install.assert_awaited_once()

    def test_install_ca_failure(self, client):
        installer = MagicMock()
        installer.install = AsyncMock(return_value=(False, "permission denied"))
        client.app.state.trust_installer = installer

        response = client.post("/api/ca/install")
        assert response.status_code == 500
        assert response.json()["detail"] == "permission denied"


class TestProxiesAPI:
    def test_requires_host_entry(self, client):
        response = client.post(
            "/api/proxies", json={"domain": "demo.local", "target": "localhost:3000"}
        )
        assert response.status_code == 404

    def test_register_update_delete(self, client):
        client.post("/api/hosts", json={"domain": "demo.local"})
        response = client.post(
            "/api/proxies", json={"domain": "demo.local", "target": "localhost:3000"}
        )
        assert response.status_code == 200
        proxy = response.json()["proxy"]
        assert proxy["target"] == "http://localhost:3000"
        assert proxy["is_running"] is False

        assert client.patch("/api/proxies/demo.local", json={}).status_code == 400
        assert client.patch("/api/proxies/demo.local", json={"port": 8443}).status_code == 200
        assert client.get("/api/proxies").json()["proxies"][0]["port"] == 8443

        assert client.delete("/api/proxies/demo.local").status_code == 200
        assert client.delete("/api/proxies/demo.local").status_code == 404

    def test_invalid_target(self, client):
        client.post("/api/hosts", json={"domain": "demo.local"})
        response = client.post(
            "/api/proxies", json={"domain": "demo.local", "target": "ftp://files"}
        )
        assert response.status_code == 400

    def test_start_issues_certificate(self, client, unused_tcp_port):
        client.post("/api/hosts", json={"domain": "demo.local"})
        client.post(
            "/api/proxies",
            json={"domain": "demo.local", "target": "localhost:3000", "port": unused_tcp_port},
        )

        response = client.post("/api/proxies/demo.local/start")
        assert response.status_code == 200
        assert client.get("/api/certificates/demo.local").json()["certificate"]["is_valid"]

        health = client.get("/health").json()
        assert health["running_routes"] == 1
        assert health["listening_ports"] == [unused_tcp_port]

        assert client.post("/api/proxies/demo.local/stop").status_code == 200
        assert client.post("/api/proxies/demo.local/stop").status_code == 404
        assert client.get("/health").json()["listening_ports"] == []

    def test_start_unknown(self, client):
        assert client.post("/api/proxies/missing.local/start").status_code == 404
