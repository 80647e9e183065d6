import pytest
import requests

from chat_configurator.deployments import (
    DeploymentError,
    DeploymentService,
    InvalidTransitionError,
    PlatformClient,
    PlatformError,
    SimulatedPlatformClient,
    check_health,
)
from chat_configurator.storage import RecordNotFoundError, Storage


class FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        self.ok = status_code < 400


class FakeSession:
    def __init__(self, status_code: int = 200, error: Exception | None = None) -> None:
        self.status_code = status_code
        self.error = error
        self.calls: list[tuple[str, float]] = []

    def get(self, url: str, timeout: float) -> FakeResponse:
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status_code)


class RejectingPlatformClient(PlatformClient):
    def deploy(self, deployment, files):
        raise PlatformError("quota exceeded")

    def destroy(self, deployment) -> None:
        raise PlatformError("already gone")


def make_service(tmp_path, platform_client=None, session=None):
    storage = Storage(tmp_path)
    storage.init()
    service = DeploymentService(
        storage.deployments,
        storage.profiles,
        platform_client=platform_client or SimulatedPlatformClient(),
        health_timeout=2.0,
        session=session or FakeSession(),
    )
    return service, storage.profiles.ensure_default()


def test_create_queues_and_worker_deploys(tmp_path) -> None:
    client = SimulatedPlatformClient()
    service, profile = make_service(tmp_path, platform_client=client)
    created = service.create({"name": "Team Chat", "configurationProfileId": profile["id"]})
    assert created["status"] == "pending"
    assert created["platform"] == "railway"
    assert created["region"] == "us-west-1"
    assert created["resourcePlan"] == "starter"

    assert service.worker.run_pending() == 1
    deployment = service.get(created["id"])
    short_id = created["id"].split("-", 1)[0]
    assert deployment["status"] == "running"
    assert deployment["publicUrl"] == f"https://team-chat-{short_id}.up.railway.app"
    assert deployment["platformProjectId"] == f"railway-project-{short_id}"
    assert deployment["deployedAt"]
    assert client.deployed == [created["id"]]
    assert any("Deployment is live" in line for line in service.logs(created["id"]))


def test_environment_overrides_apply_to_snapshot(tmp_path) -> None:
    service, profile = make_service(tmp_path)
    created = service.create(
        {"name": "demo", "configurationProfileId": profile["id"], "environmentOverrides": {"appTitle": "Override"}}
    )
    assert created["configuration"]["appTitle"] == "Override"
    assert service.profiles.get(profile["id"])["configuration"]["appTitle"] == "LibreChat"


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"name": ""}, "name must be between"),
        ({"name": "x" * 51}, "name must be between"),
        ({"name": "demo", "platform": "heroku"}, "platform must be one of"),
        ({"name": "demo", "resourcePlan": "enterprise"}, "resourcePlan must be one of"),
        ({"name": "demo"}, "configurationProfileId is required"),
        ({"name": "demo", "configurationProfileId": "x", "environmentOverrides": ["appTitle"]}, "environmentOverrides"),
    ],
)
def test_create_rejects_invalid_requests(tmp_path, payload, message) -> None:
    service, _ = make_service(tmp_path)
    with pytest.raises(DeploymentError, match=message):
        service.create(payload)


def test_create_requires_existing_profile(tmp_path) -> None:
    service, _ = make_service(tmp_path)
    with pytest.raises(RecordNotFoundError):
        service.create({"name": "demo", "configurationProfileId": "00000000-0000-0000-0000-000000000000"})


def test_platform_failure_marks_deployment_failed(tmp_path) -> None:
    service, profile = make_service(tmp_path, platform_client=RejectingPlatformClient())
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.worker.run_pending()
    deployment = service.get(created["id"])
    assert deployment["status"] == "failed"
    assert any("[ERROR] Deployment failed: quota exceeded" in line for line in deployment["deploymentLogs"])


def test_status_transitions_are_enforced(tmp_path) -> None:
    service, profile = make_service(tmp_path)
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.worker.run_pending()

    with pytest.raises(InvalidTransitionError):
        service.update(created["id"], {"status": "building"})
    with pytest.raises(DeploymentError, match="status must be one of"):
        service.update(created["id"], {"status": "exploded"})

    stopped = service.update(created["id"], {"status": "stopped", "platform": "vercel"})
    assert stopped["status"] == "stopped"
    assert stopped["platform"] == "railway"
    assert stopped["deploymentLogs"][-1].endswith("Status changed from running to stopped")


def test_stopped_before_worker_runs_is_not_deployed(tmp_path) -> None:
    client = SimulatedPlatformClient()
    service, profile = make_service(tmp_path, platform_client=client)
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.update(created["id"], {"status": "stopped"})
    service.worker.run_pending()
    assert service.get(created["id"])["status"] == "stopped"
    assert client.deployed == []


def test_health_check_updates_status_and_uptime(tmp_path) -> None:
    session = FakeSession(status_code=200)
    service, profile = make_service(tmp_path, session=session)
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.worker.run_pending()

    result = service.health_check(created["id"])
    assert result.healthy is True
    assert result.status_code == 200
    deployment = service.get(created["id"])
    assert deployment["lastHealthCheck"] == result.checked_at
    assert deployment["uptime"] >= 0
    assert session.calls == [(deployment["publicUrl"] + "/health", 2.0)]

    session.status_code = 503
    result = service.health_check(created["id"])
    assert result.healthy is False
    assert result.error == "HTTP 503"
    assert service.get(created["id"])["status"] == "failed"

    session.status_code = 200
    service.health_check(created["id"])
    assert service.get(created["id"])["status"] == "running"


def test_scheduled_health_check_runs_on_worker(tmp_path) -> None:
    session = FakeSession(error=requests.ConnectionError("refused"))
    service, profile = make_service(tmp_path, session=session)
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.worker.run_pending()

    service.schedule_health_check(created["id"])
    assert service.worker.run_pending() == 1
    deployment = service.get(created["id"])
    assert deployment["status"] == "failed"
    assert "[WARNING] Health check failed: refused" in deployment["deploymentLogs"][-1]


def test_health_check_without_public_url(tmp_path) -> None:
    service, profile = make_service(tmp_path)
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    result = service.health_check(created["id"])
    assert result.healthy is False
    assert result.error == "Deployment has no public URL"


def test_check_health_reports_connection_errors() -> None:
    result = check_health("https://example.invalid/", "2026-01-01T00:00:00.000Z", session=FakeSession(error=requests.Timeout("slow")))
    assert result.to_dict() == {
        "healthy": False,
        "checkedAt": "2026-01-01T00:00:00.000Z",
        "statusCode": None,
        "error": "slow",
    }


def test_delete_cleans_up_platform_resources(tmp_path) -> None:
    client = SimulatedPlatformClient()
    service, profile = make_service(tmp_path, platform_client=client)
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.worker.run_pending()

    assert service.delete(created["id"]) is True
    assert client.destroyed == [created["id"]]
    with pytest.raises(RecordNotFoundError):
        service.get(created["id"])


def test_delete_survives_platform_cleanup_failure(tmp_path) -> None:
    service, profile = make_service(tmp_path, platform_client=RejectingPlatformClient())
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.store.update(created["id"], {"platformProjectId": "railway-project-1"})
    assert service.delete(created["id"]) is True
    assert service.list() == []


def test_worker_thread_processes_tasks(tmp_path) -> None:
    service, profile = make_service(tmp_path)
    service.worker.start()
    try:
        created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
        service.worker.tasks.join()
    finally:
        service.worker.stop()
    assert service.get(created["id"])["status"] == "running"
    assert not service.worker.running


class StoppedDuringDeployClient(PlatformClient):
    """Lets an operator stop the deployment while the platform call is in flight."""

    def __init__(self, fail: bool) -> None:
        self.fail = fail
        self.service = None

    def deploy(self, deployment, files):
        self.service.update(deployment["id"], {"status": "stopped"})
        if self.fail:
            raise PlatformError("connection reset")
        return SimulatedPlatformClient().deploy(deployment, files)

    def destroy(self, deployment) -> None:
        pass


def test_platform_client_is_abstract() -> None:
    with pytest.raises(TypeError):
        PlatformClient()


def test_stop_during_failed_deploy_stays_stopped(tmp_path) -> None:
    client = StoppedDuringDeployClient(fail=True)
    service, profile = make_service(tmp_path, platform_client=client)
    client.service = service
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.worker.run_pending()

    deployment = service.get(created["id"])
    assert deployment["status"] == "stopped"
    assert any("[ERROR] Deployment failed: connection reset" in line for line in deployment["deploymentLogs"])


def test_stop_during_successful_deploy_keeps_platform_ids(tmp_path) -> None:
    client = StoppedDuringDeployClient(fail=False)
    service, profile = make_service(tmp_path, platform_client=client)
    client.service = service
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.worker.run_pending()

    deployment = service.get(created["id"])
    short_id = created["id"].split("-", 1)[0]
    assert deployment["status"] == "stopped"
    assert deployment["platformProjectId"] == f"railway-project-{short_id}"
    assert not deployment.get("publicUrl")


def test_record_failure_respects_transitions(tmp_path) -> None:
    service, profile = make_service(tmp_path)
    created = service.create({"name": "demo", "configurationProfileId": profile["id"]})
    service.update(created["id"], {"status": "stopped"})

    service.record_failure(created["id"], "late failure")
    deployment = service.get(created["id"])
    assert deployment["status"] == "stopped"
    assert deployment["deploymentLogs"][-1].endswith("[ERROR] late failure")

    service.record_failure("00000000-0000-0000-0000-000000000000", "gone")
