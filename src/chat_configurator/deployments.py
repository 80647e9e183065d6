from __future__ import annotations

import logging
import queue
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

import requests

from .generators import GENERATORS, generate_package
from .storage import DeploymentStore, ProfileStore, normalize_configuration

logger = logging.getLogger(__name__)

DEPLOYMENT_STATUSES = ("pending", "building", "deploying", "running", "failed", "stopped", "updating")
PLATFORMS = ("railway", "vercel", "digitalocean")
RESOURCE_PLANS = ("starter", "developer", "pro")
DEFAULT_REGION = "us-west-1"
DEFAULT_HEALTH_TIMEOUT = 5.0
MAX_NAME_LENGTH = 50
INITIATE_STATUSES = frozenset({"pending", "updating", "building", "deploying"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"building", "failed", "stopped"}),
    "building": frozenset({"deploying", "failed", "stopped"}),
    "deploying": frozenset({"running", "failed", "stopped"}),
    "running": frozenset({"updating", "failed", "stopped"}),
    "updating": frozenset({"building", "running", "failed", "stopped"}),
    "failed": frozenset({"pending", "updating", "running", "stopped"}),
    "stopped": frozenset({"pending", "updating"}),
}

UPDATABLE_FIELDS = (
    "name",
    "description",
    "status",
    "platformProjectId",
    "platformServiceId",
    "platformDeploymentId",
    "publicUrl",
    "adminUrl",
    "lastHealthCheck",
    "uptime",
    "deployedAt",
)

PLATFORM_DOMAINS = {
    "railway": "up.railway.app",
    "vercel": "vercel.app",
    "digitalocean": "ondigitalocean.app",
}


class DeploymentError(ValueError):
    """Raised for a deployment request that cannot be accepted."""


class InvalidTransitionError(DeploymentError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move deployment from {current} to {requested}")
        self.current = current
        self.requested = requested


class PlatformError(RuntimeError):
    """Raised by platform clients when the remote platform rejects a call."""


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "librechat"


@dataclass(slots=True, frozen=True)
class PlatformDeployment:
    project_id: str
    service_id: str
    deployment_id: str
    public_url: str
    admin_url: str | None = None


@dataclass(slots=True, frozen=True)
class HealthResult:
    healthy: bool
    checked_at: str
    status_code: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checkedAt": self.checked_at,
            "statusCode": self.status_code,
            "error": self.error,
        }


class PlatformClient(ABC):
    """Interface to a hosting platform; one instance serves every deployment."""

    @abstractmethod
    def deploy(self, deployment: Mapping[str, Any], files: Mapping[str, str]) -> PlatformDeployment:
        ...

    @abstractmethod
    def destroy(self, deployment: Mapping[str, Any]) -> None:
        ...


class SimulatedPlatformClient(PlatformClient):
    """Deterministic stand-in that provisions nothing and derives ids from the record."""

    def __init__(self) -> None:
        self.deployed: list[str] = []
        self.destroyed: list[str] = []

    def deploy(self, deployment: Mapping[str, Any], files: Mapping[str, str]) -> PlatformDeployment:
        platform = deployment.get("platform", "railway")
        if platform not in PLATFORM_DOMAINS:
            raise PlatformError(f"Unsupported platform: {platform}")
        if not files:
            raise PlatformError("No artifacts to deploy")
        short_id = str(deployment["id"]).split("-", 1)[0]
        host = f"{_slug(str(deployment.get('name', '')))}-{short_id}.{PLATFORM_DOMAINS[platform]}"
        self.deployed.append(str(deployment["id"]))
        return PlatformDeployment(
            project_id=f"{platform}-project-{short_id}",
            service_id=f"{platform}-service-{short_id}",
            deployment_id=f"{platform}-deployment-{short_id}",
            public_url=f"https://{host}",
            admin_url=f"https://{host}/admin",
        )

    def destroy(self, deployment: Mapping[str, Any]) -> None:
        self.destroyed.append(str(deployment["id"]))


def check_health(
    public_url: str,
    checked_at: str,
    timeout: float = DEFAULT_HEALTH_TIMEOUT,
    session: requests.Session | None = None,
) -> HealthResult:
    url = public_url.rstrip("/") + "/health"
    client = session or requests
    try:
        response = client.get(url, timeout=timeout)
    except requests.RequestException as exc:
        logger.warning("health_check_failed", extra={"url": url, "error": str(exc)})
        return HealthResult(healthy=False, checked_at=checked_at, error=str(exc))
    return HealthResult(
        healthy=response.ok,
        checked_at=checked_at,
        status_code=response.status_code,
        error=None if response.ok else f"HTTP {response.status_code}",
    )


@dataclass(slots=True, frozen=True)
class DeploymentTask:
    action: str
    deployment_id: str


_STOP = DeploymentTask(action="stop", deployment_id="")


class DeploymentWorker:
    """Runs deployment tasks off the request thread; failures land on the record."""

    def __init__(self, service: DeploymentService) -> None:
        self.service = service
        self.tasks: queue.Queue[DeploymentTask] = queue.Queue()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._loop, name="deployment-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        if not self.running:
            return
        self.tasks.put(_STOP)
        assert self._thread is not None
        self._thread.join(timeout)
        self._thread = None

    def submit(self, task: DeploymentTask) -> None:
        self.tasks.put(task)

    def run_pending(self) -> int:
        """Drain queued tasks on the calling thread."""
        processed = 0
        while True:
            try:
                task = self.tasks.get_nowait()
            except queue.Empty:
                return processed
            if task is not _STOP:
                self._run(task)
                processed += 1
            self.tasks.task_done()

    def _loop(self) -> None:
        while True:
            task = self.tasks.get()
            try:
                if task is _STOP:
                    return
                self._run(task)
            finally:
                self.tasks.task_done()

    def _run(self, task: DeploymentTask) -> None:
        try:
            self.service.execute(task)
        except Exception as exc:
            logger.exception("deployment_task_failed", extra={"action": task.action, "deployment_id": task.deployment_id})
            self.service.record_failure(task.deployment_id, f"{task.action} failed: {exc}")


class DeploymentService:
    def __init__(
        self,
        store: DeploymentStore,
        profiles: ProfileStore,
        platform_client: PlatformClient | None = None,
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.store = store
        self.profiles = profiles
        self.platform_client = platform_client or SimulatedPlatformClient()
        self.health_timeout = health_timeout
        self.session = session
        self.worker = DeploymentWorker(self)

    def list(self) -> list[dict[str, Any]]:
        return self.store.list()

    def get(self, deployment_id: str) -> dict[str, Any]:
        return self.store.get(deployment_id)

    def logs(self, deployment_id: str) -> list[str]:
        return list(self.store.get(deployment_id).get("deploymentLogs", []))

    def create(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        name = str(payload.get("name") or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise DeploymentError(f"name must be between 1 and {MAX_NAME_LENGTH} characters")
        platform = str(payload.get("platform") or "railway")
        if platform not in PLATFORMS:
            raise DeploymentError(f"platform must be one of {', '.join(PLATFORMS)}")
        plan = str(payload.get("resourcePlan") or "starter")
        if plan not in RESOURCE_PLANS:
            raise DeploymentError(f"resourcePlan must be one of {', '.join(RESOURCE_PLANS)}")
        profile_id = str(payload.get("configurationProfileId") or "")
        if not profile_id:
            raise DeploymentError("configurationProfileId is required")
        overrides = payload.get("environmentOverrides") or {}
        if not isinstance(overrides, Mapping):
            raise DeploymentError("environmentOverrides must be an object")

        profile = self.profiles.get(profile_id)
        configuration = normalize_configuration({**profile["configuration"], **overrides})
        record = self.store.create(
            {
                "name": name,
                "description": payload.get("description"),
                "configurationProfileId": profile_id,
                "configuration": configuration,
                "status": "pending",
                "platform": platform,
                "region": str(payload.get("region") or DEFAULT_REGION),
                "resourcePlan": plan,
            }
        )
        self.store.append_log(record["id"], f"Deployment created from profile '{profile['name']}'")
        logger.info("deployment_created", extra={"deployment_id": record["id"], "platform": platform})
        self.worker.submit(DeploymentTask("initiate", record["id"]))
        return self.store.get(record["id"])

    def update(self, deployment_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        updates = {key: changes[key] for key in UPDATABLE_FIELDS if key in changes}
        if "name" in updates:
            name = str(updates["name"] or "").strip()
            if not name or len(name) > MAX_NAME_LENGTH:
                raise DeploymentError(f"name must be between 1 and {MAX_NAME_LENGTH} characters")
            updates["name"] = name
        with self.store.lock:
            record = self.store.get(deployment_id)
            if "status" in updates:
                self._check_transition(record["status"], str(updates["status"]))
            updated = self.store.update(deployment_id, updates)
            if "status" in updates and updates["status"] != record["status"]:
                updated = self.store.append_log(
                    deployment_id, f"Status changed from {record['status']} to {updates['status']}"
                )
        return updated

    def delete(self, deployment_id: str) -> bool:
        record = self.store.get(deployment_id)
        if record.get("platformProjectId"):
            try:
                self.platform_client.destroy(record)
            except Exception:
                # the record goes away regardless; the remote resource may linger
                logger.warning("platform_cleanup_failed", extra={"deployment_id": deployment_id}, exc_info=True)
        return self.store.delete(deployment_id)

    def execute(self, task: DeploymentTask) -> None:
        if task.action == "initiate":
            self.initiate(task.deployment_id)
        elif task.action == "health_check":
            self.health_check(task.deployment_id)
        else:
            raise DeploymentError(f"Unknown deployment task: {task.action}")

    def record_failure(self, deployment_id: str, message: str) -> None:
        """Log ``message`` and mark the deployment failed when its status allows it."""
        with self.store.lock:
            if not self.store.exists(deployment_id):
                return
            record = self.store.append_log(deployment_id, message, level="error")
            if record["status"] != "failed" and "failed" in ALLOWED_TRANSITIONS.get(record["status"], frozenset()):
                self.store.update(deployment_id, {"status": "failed"})

    def _check_transition(self, current: str, requested: str) -> None:
        if requested not in DEPLOYMENT_STATUSES:
            raise DeploymentError(f"status must be one of {', '.join(DEPLOYMENT_STATUSES)}")
        if requested != current and requested not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(current, requested)

    def _advance(self, deployment_id: str, status: str, message: str, **changes: Any) -> dict[str, Any] | None:
        """Move an in-flight deployment on; ``None`` once someone else changed its status."""
        with self.store.lock:
            record = self.store.get(deployment_id)
            if record["status"] not in INITIATE_STATUSES:
                logger.info(
                    "deployment_superseded",
                    extra={"deployment_id": deployment_id, "status": record["status"], "requested": status},
                )
                return None
            self._check_transition(record["status"], status)
            self.store.update(deployment_id, {"status": status, **changes})
            return self.store.append_log(deployment_id, message)

    def initiate(self, deployment_id: str) -> dict[str, Any]:
        record = self.store.get(deployment_id)
        if record["status"] not in ("pending", "updating"):
            logger.info("deployment_skipped", extra={"deployment_id": deployment_id, "status": record["status"]})
            return record
        record = self._advance(deployment_id, "building", "Generating deployment artifacts")
        if record is None:
            return self.store.get(deployment_id)
        try:
            files = generate_package(record["configuration"], include_files=tuple(GENERATORS), package_name=record["name"])
            record = self._advance(deployment_id, "deploying", f"Deploying {len(files)} artifacts to {record['platform']}")
            if record is None:
                return self.store.get(deployment_id)
            result = self.platform_client.deploy(record, files)
        except Exception as exc:
            logger.warning("deployment_failed", extra={"deployment_id": deployment_id, "error": str(exc)})
            self.record_failure(deployment_id, f"Deployment failed: {exc}")
            return self.store.get(deployment_id)

        record = self._advance(
            deployment_id,
            "running",
            f"Deployment is live at {result.public_url}",
            platformProjectId=result.project_id,
            platformServiceId=result.service_id,
            platformDeploymentId=result.deployment_id,
            publicUrl=result.public_url,
            adminUrl=result.admin_url,
            deployedAt=self.store.clock(),
        )
        if record is None:
            # keep the platform ids so a later delete still cleans the remote resources up
            self.store.update(deployment_id, {"platformProjectId": result.project_id, "platformServiceId": result.service_id})
            return self.store.get(deployment_id)
        logger.info("deployment_running", extra={"deployment_id": deployment_id, "public_url": result.public_url})
        return record

    def schedule_health_check(self, deployment_id: str) -> None:
        self.store.get(deployment_id)
        self.worker.submit(DeploymentTask("health_check", deployment_id))

    def health_check(self, deployment_id: str) -> HealthResult:
        record = self.store.get(deployment_id)
        checked_at = self.store.clock()
        public_url = record.get("publicUrl")
        if not public_url:
            result = HealthResult(healthy=False, checked_at=checked_at, error="Deployment has no public URL")
            self.store.update(deployment_id, {"lastHealthCheck": checked_at})
            self.store.append_log(deployment_id, result.error, level="warning")
            return result

        result = check_health(public_url, checked_at, timeout=self.health_timeout, session=self.session)
        with self.store.lock:
            # the status may have moved while the request was in flight
            record = self.store.get(deployment_id)
            changes: dict[str, Any] = {"lastHealthCheck": checked_at}
            if result.healthy:
                if record.get("deployedAt"):
                    elapsed = _parse_timestamp(checked_at) - _parse_timestamp(record["deployedAt"])
                    changes["uptime"] = max(int(elapsed.total_seconds()), 0)
                if record["status"] == "failed":
                    changes["status"] = "running"
                message = "Health check passed"
            else:
                if record["status"] == "running":
                    changes["status"] = "failed"
                message = f"Health check failed: {result.error}"
            self.store.update(deployment_id, changes)
            self.store.append_log(deployment_id, message, level="info" if result.healthy else "warning")
        return result
