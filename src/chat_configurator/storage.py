from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from .schema import FIELDS_BY_NAME, configuration_to_json, default_configuration, parse_configuration

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_NAME = "Default Configuration"
DEFAULT_HISTORY_LIMIT = 10
MAX_HISTORY_ENTRIES = 100


class StorageError(RuntimeError):
    """Raised when a stored record exists but cannot be decoded."""


class RecordNotFoundError(LookupError):
    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)


def normalize_configuration(configuration: Mapping[str, Any]) -> dict[str, Any]:
    return configuration_to_json(parse_configuration(configuration).configuration)


class JsonRecordStore:
    """One JSON document per record, named ``<uuid>.json`` under ``directory``."""

    kind = "Record"

    def __init__(self, directory: str | Path, clock: Callable[[], str] = utc_now) -> None:
        self.directory = Path(directory)
        self.clock = clock
        # serializes read-modify-write cycles across request and worker threads
        self.lock = threading.RLock()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, record_id: str) -> Path:
        try:
            canonical = str(uuid.UUID(str(record_id)))
        except ValueError as exc:
            raise RecordNotFoundError(self.kind, str(record_id)) from exc
        return self.directory / f"{canonical}.json"

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("store_record_corrupt", extra={"path": str(path)})
            raise StorageError(f"Corrupt {self.kind.lower()} record: {path.name}") from exc
        except OSError:
            logger.exception("store_read_failed", extra={"path": str(path)})
            raise

    def _write(self, record: dict[str, Any]) -> dict[str, Any]:
        path = self._path(record["id"])
        temp_path = path.with_suffix(".json.tmp")
        try:
            temp_path.write_text(json_dumps(record), encoding="utf-8")
            os.replace(temp_path, path)
        except OSError:
            logger.exception("store_write_failed", extra={"path": str(path)})
            raise
        return record

    def _records(self) -> list[dict[str, Any]]:
        return [self._read(path) for path in sorted(self.directory.glob("*.json"))]

    def exists(self, record_id: str) -> bool:
        try:
            return self._path(record_id).exists()
        except RecordNotFoundError:
            return False

    def get(self, record_id: str) -> dict[str, Any]:
        path = self._path(record_id)
        if not path.exists():
            raise RecordNotFoundError(self.kind, record_id)
        return self._read(path)

    def delete(self, record_id: str) -> bool:
        try:
            path = self._path(record_id)
        except RecordNotFoundError:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            logger.exception("store_delete_failed", extra={"path": str(path)})
            raise
        return True


class ProfileStore(JsonRecordStore):
    kind = "Profile"

    def list(self) -> list[dict[str, Any]]:
        return sorted(self._records(), key=lambda record: (record.get("createdAt", ""), record.get("name", "")))

    def save(
        self,
        name: str,
        configuration: Mapping[str, Any],
        description: str | None = None,
    ) -> dict[str, Any]:
        now = self.clock()
        record = {
            "id": str(uuid.uuid4()),
            "name": name,
            "description": description,
            "configuration": normalize_configuration(configuration),
            "createdAt": now,
            "updatedAt": now,
        }
        logger.info("profile_saved", extra={"profile_id": record["id"]})
        return self._write(record)

    def update(self, record_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Apply a partial update; ``id`` and ``createdAt`` never change."""
        with self.lock:
            record = self.get(record_id)
            if "name" in changes and changes["name"]:
                record["name"] = str(changes["name"])
            if "description" in changes:
                record["description"] = changes["description"]
            if isinstance(changes.get("configuration"), Mapping):
                merged = {**record.get("configuration", {}), **changes["configuration"]}
                record["configuration"] = normalize_configuration(merged)
            record["updatedAt"] = self.clock()
            return self._write(record)

    def find_by_name(self, name: str) -> dict[str, Any] | None:
        return next((record for record in self.list() if record.get("name") == name), None)

    def ensure_default(self) -> dict[str, Any]:
        existing = self.find_by_name(DEFAULT_PROFILE_NAME)
        if existing is not None:
            return existing
        logger.info("default_profile_seeded")
        return self.save(DEFAULT_PROFILE_NAME, default_configuration(), "Seeded on first run")

    def get_default(self, secrets: SecretsStore | None = None) -> dict[str, Any]:
        """The default profile's configuration with locally stored secrets filled in."""
        configuration = dict(self.ensure_default()["configuration"])
        if secrets is not None:
            for key, value in secrets.values().items():
                if key in FIELDS_BY_NAME and value and not configuration.get(key):
                    configuration[key] = value
        return configuration


class HistoryStore(JsonRecordStore):
    kind = "History entry"

    def __init__(
        self,
        directory: str | Path,
        clock: Callable[[], str] = utc_now,
        max_entries: int = MAX_HISTORY_ENTRIES,
    ) -> None:
        super().__init__(directory, clock)
        self.max_entries = max_entries

    def append(self, configuration: Mapping[str, Any], package_name: str) -> dict[str, Any]:
        entry = {
            "id": str(uuid.uuid4()),
            "configuration": normalize_configuration(configuration),
            "timestamp": self.clock(),
            "packageName": package_name,
        }
        self._write(entry)
        self.prune()
        return entry

    def _ordered(self) -> list[dict[str, Any]]:
        return sorted(self._records(), key=lambda entry: (entry.get("timestamp", ""), entry["id"]), reverse=True)

    def list(self, limit: int | None = DEFAULT_HISTORY_LIMIT) -> list[dict[str, Any]]:
        entries = self._ordered()
        return entries if limit is None else entries[: max(limit, 0)]

    def load(self, record_id: str) -> dict[str, Any]:
        return self.get(record_id)["configuration"]

    def prune(self) -> int:
        stale = self._ordered()[self.max_entries :]
        for entry in stale:
            self.delete(entry["id"])
        return len(stale)


class DeploymentStore(JsonRecordStore):
    kind = "Deployment"

    def list(self) -> list[dict[str, Any]]:
        return sorted(self._records(), key=lambda record: (record.get("createdAt", ""), record["id"]), reverse=True)

    def create(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        now = self.clock()
        record = {
            "id": str(uuid.uuid4()),
            "deploymentLogs": [],
            "uptime": 0,
            **dict(fields),
            "createdAt": now,
            "updatedAt": now,
        }
        return self._write(record)

    def update(self, record_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        with self.lock:
            record = self.get(record_id)
            record.update({key: value for key, value in changes.items() if key not in ("id", "createdAt")})
            record["updatedAt"] = self.clock()
            return self._write(record)

    def append_log(self, record_id: str, message: str, level: str = "info") -> dict[str, Any]:
        with self.lock:
            record = self.get(record_id)
            now = self.clock()
            record.setdefault("deploymentLogs", []).append(f"{now} [{level.upper()}] {message}")
            record["updatedAt"] = now
            return self._write(record)


class SecretsStore:
    """Free-form local secrets for demo use, loaded and saved explicitly."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._values: dict[str, str] = {}
        self._loaded = False

    def load(self) -> dict[str, str]:
        if self.path.exists():
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise StorageError(f"Corrupt secrets file: {self.path}") from exc
            except OSError:
                logger.exception("secrets_read_failed", extra={"path": str(self.path)})
                raise
            if not isinstance(payload, dict):
                raise StorageError(f"Secrets file must hold a JSON object: {self.path}")
            self._values = {str(key): str(value) for key, value in payload.items() if value is not None}
        else:
            self._values = {}
        self._loaded = True
        return dict(self._values)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def values(self) -> dict[str, str]:
        self._ensure_loaded()
        return dict(self._values)

    def get(self, key: str, default: str | None = None) -> str | None:
        self._ensure_loaded()
        return self._values.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._ensure_loaded()
        self._values[key] = value

    def save(self) -> None:
        self._ensure_loaded()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".json.tmp")
        try:
            temp_path.write_text(json_dumps(self._values), encoding="utf-8")
            os.replace(temp_path, self.path)
        except OSError:
            logger.exception("secrets_write_failed", extra={"path": str(self.path)})
            raise

    def clear(self) -> None:
        self._values = {}
        self._loaded = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class Storage:
    """All stores rooted at one data directory."""

    def __init__(self, data_dir: str | Path, clock: Callable[[], str] = utc_now) -> None:
        self.data_dir = Path(data_dir)
        self.profiles = ProfileStore(self.data_dir / "profiles", clock)
        self.history = HistoryStore(self.data_dir / "history", clock)
        self.deployments = DeploymentStore(self.data_dir / "deployments", clock)
        self.secrets = SecretsStore(self.data_dir / "secrets" / "demo-keys.json")

    def init(self) -> None:
        self.secrets.load()
        self.profiles.ensure_default()
