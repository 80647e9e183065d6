import io
import json
import zipfile

from chat_configurator.app import create_app


class HealthySession:
    def get(self, url, timeout):
        return type("Response", (), {"ok": True, "status_code": 200})()


def make_client(tmp_path):
    app = create_app(str(tmp_path / "data"), start_worker=False)
    return app, app.test_client()


def default_profile_id(client) -> str:
    profiles = client.get("/api/profiles").get_json()
    return next(profile["id"] for profile in profiles if profile["name"] == "Default Configuration")


def test_health_endpoint(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "app": "configurator"}


def test_default_configuration_and_schema(tmp_path) -> None:
    secrets = tmp_path / "data" / "secrets" / "demo-keys.json"
    secrets.parent.mkdir(parents=True)
    secrets.write_text(json.dumps({"openaiApiKey": "sk-demo"}), encoding="utf-8")
    _, client = make_client(tmp_path)

    configuration = client.get("/api/configuration/default").get_json()
    assert configuration["port"] == 3080
    assert configuration["openaiApiKey"] == "sk-demo"

    schema = client.get("/api/configuration/schema").get_json()
    assert schema["configVersion"] == "1.2.8"
    assert any(field["name"] == "mcpServers" for field in schema["fields"])


def test_validate_returns_category_report(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post("/api/configuration/validate", json={"port": 0})
    assert response.status_code == 200
    report = {status["category"]: status for status in response.get_json()}
    assert report["Server"]["status"] == "invalid"
    assert report["Server"]["errors"] == ["port: must be between 1 and 65535"]
    assert report["Security"]["status"] == "invalid"


def test_malformed_json_is_rejected(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post("/api/configuration/validate", data="{not json", content_type="application/json")
    assert response.status_code == 400
    assert response.get_json() == {"error": "invalid request payload"}

    response = client.post("/api/configuration/validate", json=["a", "list"])
    assert response.status_code == 400


def test_generate_package_and_history(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post(
        "/api/package/generate",
        json={"configuration": {"appTitle": "Team Chat"}, "packageName": "team"},
    )
    assert response.status_code == 200
    files = response.get_json()["files"]
    assert set(files) == {".env", "librechat.yaml", "docker-compose.yml", "install.sh", "README.md"}
    assert "OPENAI_API_KEY={{OPENAI_API_KEY}}" in files[".env"].splitlines()

    history = client.get("/api/configuration/history").get_json()
    assert len(history) == 1
    assert history[0]["packageName"] == "team"

    loaded = client.post(f"/api/configuration/load/{history[0]['id']}")
    assert loaded.status_code == 200
    assert loaded.get_json()["appTitle"] == "Team Chat"


def test_generate_rejects_invalid_requests(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post("/api/package/generate", json={"configuration": {"port": 0}})
    assert response.status_code == 400
    payload = response.get_json()
    assert payload["error"] == "invalid configuration"
    assert payload["details"] == "port: must be between 1 and 65535"

    response = client.post("/api/package/generate", json={"configuration": {}, "includeFiles": ["helm"]})
    assert response.status_code == 400
    assert "env" in response.get_json()["supported"]

    response = client.post("/api/package/generate", json={"includeFiles": ["env"]})
    assert response.status_code == 400

    assert client.get("/api/configuration/history").get_json() == []


def test_download_returns_zip(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post(
        "/api/package/download",
        json={"configuration": {}, "packageName": "team", "includeFiles": ["env", "install-script"]},
    )
    assert response.status_code == 200
    assert response.mimetype == "application/zip"
    assert "team.zip" in response.headers["Content-Disposition"]
    archive = zipfile.ZipFile(io.BytesIO(response.data))
    assert archive.namelist() == ["team/.env", "team/install.sh"]


def test_profile_crud_and_export(tmp_path) -> None:
    _, client = make_client(tmp_path)
    created = client.post(
        "/api/profiles",
        json={"name": "Team", "description": "shared", "configuration": {"appTitle": "Team Chat", "openaiApiKey": "sk-1"}},
    )
    assert created.status_code == 201
    profile = created.get_json()
    assert len(client.get("/api/profiles").get_json()) == 2

    updated = client.put(f"/api/profiles/{profile['id']}", json={"name": "Team 2", "configuration": {"port": 9000}})
    assert updated.status_code == 200
    assert updated.get_json()["name"] == "Team 2"
    assert updated.get_json()["configuration"]["port"] == 9000
    assert updated.get_json()["configuration"]["appTitle"] == "Team Chat"

    exported = client.post(f"/api/profiles/{profile['id']}/export").get_json()
    assert exported["name"] == "Team 2"
    assert exported["configuration"]["openaiApiKey"] == "{{OPENAI_API_KEY}}"

    deleted = client.delete(f"/api/profiles/{profile['id']}")
    assert deleted.get_json() == {"success": True}
    missing = client.get(f"/api/profiles/{profile['id']}")
    assert missing.status_code == 404
    assert missing.get_json() == {"error": "Profile not found"}
    assert client.delete(f"/api/profiles/{profile['id']}").status_code == 404


def test_profile_validation_errors(tmp_path) -> None:
    _, client = make_client(tmp_path)
    assert client.post("/api/profiles", json={"configuration": {}}).status_code == 400

    response = client.post("/api/profiles", json={"name": "Bad", "configuration": {"credsKey": "short"}})
    assert response.status_code == 400
    assert response.get_json()["errors"][0]["category"] == "Security"

    profile_id = default_profile_id(client)
    response = client.put(f"/api/profiles/{profile_id}", json={"configuration": {"port": -1}})
    assert response.status_code == 400
    assert client.get(f"/api/profiles/{profile_id}").get_json()["configuration"]["port"] == 3080

    assert client.get("/api/profiles/not-a-uuid").status_code == 404


def test_import_endpoint(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post(
        "/api/configuration/import",
        json={"files": {".env": "PORT=9000\nOPENAI_API_KEY={{OPENAI_API_KEY}}\n"}},
    )
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["configuration"]["port"] == 9000
    assert payload["configuration"]["openaiApiKey"] is None
    assert payload["version"]["status"] == "unknown"

    response = client.post("/api/configuration/import", json={"files": {"librechat.yaml": "a: [b"}})
    assert response.status_code == 400
    assert client.post("/api/configuration/import", json={}).status_code == 400


def test_deployment_lifecycle(tmp_path) -> None:
    app, client = make_client(tmp_path)
    service = app.extensions["configurator"].deployments
    service.session = HealthySession()

    created = client.post("/api/deployments", json={"name": "Demo", "configurationProfileId": default_profile_id(client)})
    assert created.status_code == 201
    deployment = created.get_json()
    assert deployment["status"] == "pending"

    service.worker.run_pending()
    fetched = client.get(f"/api/deployments/{deployment['id']}").get_json()
    assert fetched["status"] == "running"
    assert [item["id"] for item in client.get("/api/deployments").get_json()] == [deployment["id"]]

    logs = client.get(f"/api/deployments/{deployment['id']}/logs").get_json()["logs"]
    assert any("Deployment is live" in line for line in logs)

    checked = client.post(f"/api/deployments/{deployment['id']}/health-check")
    assert checked.status_code == 200
    assert checked.get_json()["healthy"] is True
    assert checked.get_json()["deployment"]["lastHealthCheck"] == checked.get_json()["checkedAt"]

    scheduled = client.post(f"/api/deployments/{deployment['id']}/health-check", json={"background": True})
    assert scheduled.status_code == 202
    assert service.worker.run_pending() == 1

    conflict = client.put(f"/api/deployments/{deployment['id']}", json={"status": "pending"})
    assert conflict.status_code == 409

    stopped = client.put(f"/api/deployments/{deployment['id']}", json={"status": "stopped"})
    assert stopped.get_json()["status"] == "stopped"

    assert client.delete(f"/api/deployments/{deployment['id']}").get_json() == {"success": True}
    assert client.get(f"/api/deployments/{deployment['id']}").status_code == 404


def test_deployment_request_errors(tmp_path) -> None:
    _, client = make_client(tmp_path)
    response = client.post("/api/deployments", json={"name": "Demo", "platform": "heroku", "configurationProfileId": "x"})
    assert response.status_code == 400
    assert "platform must be one of" in response.get_json()["error"]

    response = client.post(
        "/api/deployments", json={"name": "Demo", "configurationProfileId": "00000000-0000-0000-0000-000000000000"}
    )
    assert response.status_code == 404
    assert response.get_json() == {"error": "Profile not found"}
