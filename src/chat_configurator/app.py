from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flask import Flask, abort, jsonify, request, send_file
from werkzeug.exceptions import BadRequest, HTTPException

from .deployments import DeploymentError, DeploymentService, InvalidTransitionError, PlatformClient
from .generators import (
    DEFAULT_INCLUDE_FILES,
    GENERATORS,
    GenerationError,
    InvalidConfigurationError,
    UnknownArtifactError,
    bundle_zip,
    export_profile,
    generate_package,
    package_slug,
)
from .importers import ImportParseError, import_files
from .schema import parse_configuration, schema_document
from .security import deep_redact
from .storage import RecordNotFoundError, Storage
from .validator import validate_configuration

DEFAULT_DATA_DIR = "./data"


@dataclass(slots=True)
class ConfiguratorServices:
    storage: Storage
    deployments: DeploymentService


def _services(app: Flask) -> ConfiguratorServices:
    return app.extensions["configurator"]


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("chat_configurator").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(RecordNotFoundError)
    def handle_not_found(error: RecordNotFoundError) -> Any:
        app.logger.info("record_not_found", extra={"path": request.path, "kind": error.kind, "record_id": error.record_id})
        return jsonify({"error": f"{error.kind} not found"}), 404

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _invalid_configuration(errors: list[Any]) -> Any:
    return (
        jsonify(
            {
                "error": "invalid configuration",
                "details": "; ".join(str(error) for error in errors),
                "errors": [error.to_dict() for error in errors],
            }
        ),
        400,
    )


def _package_request(body: dict[str, Any]) -> tuple[dict[str, Any], list[str], str]:
    configuration = body.get("configuration")
    if not isinstance(configuration, dict):
        abort(400)
    include_files = body.get("includeFiles", list(DEFAULT_INCLUDE_FILES))
    if not isinstance(include_files, list) or not all(isinstance(item, str) for item in include_files):
        abort(400)
    package_name = body.get("packageName") or "librechat"
    if not isinstance(package_name, str):
        abort(400)
    return configuration, include_files, package_slug(package_name)


def create_app(
    data_dir: str | Path | None = None,
    platform_client: PlatformClient | None = None,
    start_worker: bool = True,
) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "configurator")
    _configure_error_handlers(app)
    app.config["DATA_DIR"] = str(data_dir or os.environ.get("CONFIGURATOR_DATA_DIR", DEFAULT_DATA_DIR))
    app.config["DEPLOY_HEALTH_TIMEOUT"] = float(os.environ.get("DEPLOY_HEALTH_TIMEOUT", "5"))

    storage = Storage(app.config["DATA_DIR"])
    storage.init()
    deployments = DeploymentService(
        storage.deployments,
        storage.profiles,
        platform_client=platform_client,
        health_timeout=app.config["DEPLOY_HEALTH_TIMEOUT"],
    )
    if start_worker:
        deployments.worker.start()
    app.extensions["configurator"] = ConfiguratorServices(storage=storage, deployments=deployments)

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.get("/api/configuration/default")
    def default_configuration() -> Any:
        services = _services(app)
        return jsonify(services.storage.profiles.get_default(services.storage.secrets))

    @app.get("/api/configuration/schema")
    def configuration_schema() -> Any:
        return jsonify(schema_document())

    @app.post("/api/configuration/validate")
    def validate() -> Any:
        report = validate_configuration(_json_body())
        app.logger.info(
            "configuration_validated",
            extra={"invalid": [status.category for status in report if status.status == "invalid"]},
        )
        return jsonify([status.to_dict() for status in report])

    @app.post("/api/configuration/import")
    def import_configuration() -> Any:
        files = _json_body().get("files")
        if not isinstance(files, dict) or not files:
            abort(400)
        try:
            result = import_files(files)
        except ImportParseError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify(result.to_dict())

    @app.get("/api/configuration/history")
    def list_history() -> Any:
        limit = request.args.get("limit", default=10, type=int)
        return jsonify(_services(app).storage.history.list(limit=limit))

    @app.post("/api/configuration/load/<entry_id>")
    def load_history(entry_id: str) -> Any:
        return jsonify(_services(app).storage.history.load(entry_id))

    @app.get("/api/profiles")
    def list_profiles() -> Any:
        return jsonify(_services(app).storage.profiles.list())

    @app.get("/api/profiles/<profile_id>")
    def get_profile(profile_id: str) -> Any:
        return jsonify(_services(app).storage.profiles.get(profile_id))

    @app.post("/api/profiles")
    def create_profile() -> Any:
        body = _json_body()
        name = str(body.get("name") or "").strip()
        configuration = body.get("configuration")
        if not name or not isinstance(configuration, dict):
            return jsonify({"error": "invalid profile data", "details": "name and configuration are required"}), 400
        parsed = parse_configuration(configuration)
        if not parsed.valid:
            return _invalid_configuration(parsed.errors)
        profile = _services(app).storage.profiles.save(name, configuration, body.get("description"))
        return jsonify(profile), 201

    @app.put("/api/profiles/<profile_id>")
    def update_profile(profile_id: str) -> Any:
        body = _json_body()
        profiles = _services(app).storage.profiles
        if isinstance(body.get("configuration"), dict):
            existing = profiles.get(profile_id)
            parsed = parse_configuration({**existing["configuration"], **body["configuration"]})
            if not parsed.valid:
                return _invalid_configuration(parsed.errors)
        profile = profiles.update(profile_id, body)
        app.logger.debug("profile_updated", extra={"profile_id": profile_id, "changes": deep_redact(body)})
        return jsonify(profile)

    @app.delete("/api/profiles/<profile_id>")
    def delete_profile(profile_id: str) -> Any:
        if not _services(app).storage.profiles.delete(profile_id):
            abort(404, description="Profile not found")
        return jsonify({"success": True})

    @app.post("/api/profiles/<profile_id>/export")
    def export_profile_route(profile_id: str) -> Any:
        profile = _services(app).storage.profiles.get(profile_id)
        return jsonify(export_profile(profile["configuration"], profile["name"], profile.get("description")))

    def _generate(body: dict[str, Any]) -> tuple[dict[str, str], str]:
        configuration, include_files, package_name = _package_request(body)
        files = generate_package(configuration, include_files, package_name)
        _services(app).storage.history.append(configuration, package_name)
        app.logger.info("package_generated", extra={"package": package_name, "files": sorted(files)})
        return files, package_name

    @app.post("/api/package/generate")
    def generate() -> Any:
        try:
            files, _ = _generate(_json_body())
        except InvalidConfigurationError as exc:
            return _invalid_configuration(exc.errors)
        except UnknownArtifactError as exc:
            return jsonify({"error": str(exc), "supported": list(GENERATORS)}), 400
        except GenerationError:
            return jsonify({"error": "failed to generate package"}), 500
        return jsonify({"files": files})

    @app.post("/api/package/download")
    def download() -> Any:
        try:
            files, package_name = _generate(_json_body())
        except InvalidConfigurationError as exc:
            return _invalid_configuration(exc.errors)
        except UnknownArtifactError as exc:
            return jsonify({"error": str(exc), "supported": list(GENERATORS)}), 400
        except GenerationError:
            return jsonify({"error": "failed to generate package"}), 500
        archive = bundle_zip(files, root=package_name)
        return send_file(
            io.BytesIO(archive),
            mimetype="application/zip",
            as_attachment=True,
            download_name=f"{package_name}.zip",
        )

    @app.get("/api/deployments")
    def list_deployments() -> Any:
        return jsonify(_services(app).deployments.list())

    @app.get("/api/deployments/<deployment_id>")
    def get_deployment(deployment_id: str) -> Any:
        return jsonify(_services(app).deployments.get(deployment_id))

    @app.post("/api/deployments")
    def create_deployment() -> Any:
        body = _json_body()
        try:
            deployment = _services(app).deployments.create(body)
        except DeploymentError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify(deployment), 201

    @app.put("/api/deployments/<deployment_id>")
    def update_deployment(deployment_id: str) -> Any:
        try:
            deployment = _services(app).deployments.update(deployment_id, _json_body())
        except InvalidTransitionError as exc:
            return jsonify({"error": str(exc)}), 409
        except DeploymentError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify(deployment)

    @app.delete("/api/deployments/<deployment_id>")
    def delete_deployment(deployment_id: str) -> Any:
        if not _services(app).deployments.delete(deployment_id):
            abort(404, description="Deployment not found")
        return jsonify({"success": True})

    @app.get("/api/deployments/<deployment_id>/logs")
    def deployment_logs(deployment_id: str) -> Any:
        return jsonify({"logs": _services(app).deployments.logs(deployment_id)})

    @app.post("/api/deployments/<deployment_id>/health-check")
    def deployment_health_check(deployment_id: str) -> Any:
        service = _services(app).deployments
        body = request.get_json(silent=True) or {}
        if isinstance(body, dict) and body.get("background"):
            service.schedule_health_check(deployment_id)
            return jsonify({"status": "scheduled"}), 202
        result = service.health_check(deployment_id)
        return jsonify({**result.to_dict(), "deployment": service.get(deployment_id)})

    return app
