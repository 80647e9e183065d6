from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml
from dotenv import dotenv_values

from .mapper import NestedConfiguration, to_flat
from .schema import CONFIG_VERSION, ENV_FIELD_NAMES, configuration_to_json, parse_configuration
from .security import ENV_REFERENCE_PATTERN

logger = logging.getLogger(__name__)


class ImportParseError(ValueError):
    """Raised when an uploaded file cannot be parsed at all."""

    def __init__(self, filename: str, message: str) -> None:
        super().__init__(f"{filename}: {message}")
        self.filename = filename


@dataclass(slots=True, frozen=True)
class VersionCheck:
    status: str
    current_version: str
    message: str
    imported_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "importedVersion": self.imported_version,
            "currentVersion": self.current_version,
            "message": self.message,
        }


@dataclass(slots=True)
class ImportResult:
    configuration: dict[str, Any]
    version: VersionCheck
    warnings: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "configuration": self.configuration,
            "version": self.version.to_dict(),
            "warnings": list(self.warnings),
            "sources": list(self.sources),
        }


def validate_config_version(imported_version: str | None) -> VersionCheck:
    if not imported_version:
        return VersionCheck(
            status="unknown",
            current_version=CONFIG_VERSION,
            message="Configuration has no version information; it may come from an older release.",
        )
    imported_version = str(imported_version).strip()
    if imported_version == CONFIG_VERSION:
        return VersionCheck(
            status="compatible",
            current_version=CONFIG_VERSION,
            imported_version=imported_version,
            message="Configuration is compatible with this version.",
        )
    return VersionCheck(
        status="outdated",
        current_version=CONFIG_VERSION,
        imported_version=imported_version,
        message=(
            f"Configuration is from version {imported_version}, but this tool targets {CONFIG_VERSION}. "
            "Some settings may not carry over."
        ),
    )


def parse_env_file(content: str) -> dict[str, str]:
    """``KEY=VALUE`` lines into a mapping; comments and malformed lines are skipped.

    ``$$`` is the compose escape for a literal ``$`` and is undone here.
    """
    values = dotenv_values(stream=io.StringIO(content), interpolate=False)
    return {key: value.replace("$$", "$") for key, value in values.items() if value is not None}


def parse_yaml_file(content: str, filename: str = "librechat.yaml") -> dict[str, Any]:
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ImportParseError(filename, f"YAML parsing failed: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ImportParseError(filename, "YAML document must be a mapping")
    return document


def parse_profile_json(content: str, filename: str = "profile.json") -> tuple[dict[str, Any], str | None]:
    """Flat configuration and declared config version from an exported profile."""
    try:
        document = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ImportParseError(filename, f"JSON parsing failed: {exc.msg}") from exc
    if not isinstance(document, dict):
        raise ImportParseError(filename, "profile must be a JSON object")
    configuration = document.get("configuration", document)
    if not isinstance(configuration, dict):
        raise ImportParseError(filename, "profile configuration must be a JSON object")
    version = document.get("configVersion") or configuration.get("configVer")
    return dict(configuration), version


def _file_kind(filename: str) -> str | None:
    name = filename.rsplit("/", 1)[-1].lower()
    if name == ".env" or name.startswith(".env.") or name.endswith(".env"):
        return "env"
    if name.startswith("docker-compose"):
        return None
    if name.endswith((".yaml", ".yml")):
        return "yaml"
    if name.endswith(".json"):
        return "profile"
    return None


def _resolve_references(document: dict[str, Any], environment: Mapping[str, str]) -> set[str]:
    """Put MCP and custom endpoint secrets routed through ``${NAME}`` back in place."""
    used: set[str] = set()

    def resolve(value: Any) -> Any:
        match = ENV_REFERENCE_PATTERN.match(value.strip()) if isinstance(value, str) else None
        if match is None or match.group(1) not in environment:
            return value
        used.add(match.group(1))
        return environment[match.group(1)]

    servers = document.get("mcpServers")
    if isinstance(servers, dict):
        for settings in servers.values():
            if not isinstance(settings, dict):
                continue
            for section in ("headers", "env"):
                values = settings.get(section)
                if isinstance(values, dict):
                    for key, value in values.items():
                        values[key] = resolve(value)

    endpoints = document.get("endpoints")
    custom = endpoints.get("custom") if isinstance(endpoints, dict) else None
    if isinstance(custom, list):
        for endpoint in custom:
            if isinstance(endpoint, dict) and "apiKey" in endpoint:
                endpoint["apiKey"] = resolve(endpoint["apiKey"])
    return used


def import_files(files: Mapping[str, str]) -> ImportResult:
    """Merge uploaded ``.env``, ``librechat.yaml`` and profile JSON into one configuration.

    Environment and YAML values go through the reverse mapping; a profile's
    flat configuration is applied on top. Placeholder secrets come back unset.
    """
    environment: dict[str, str] = {}
    document: dict[str, Any] = {}
    profile: dict[str, Any] = {}
    version: str | None = None
    warnings: list[str] = []
    sources: list[str] = []

    for filename in sorted(files):
        content = files[filename]
        if not isinstance(content, str):
            raise ImportParseError(filename, "file content must be text")
        kind = _file_kind(filename)
        if kind is None:
            warnings.append(f"{filename}: not a recognized configuration file, skipped")
            continue
        sources.append(filename)
        if kind == "env":
            environment.update(parse_env_file(content))
        elif kind == "yaml":
            document = parse_yaml_file(content, filename)
            if document.get("version") is not None and version is None:
                version = str(document["version"])
        else:
            profile, profile_version = parse_profile_json(content, filename)
            if profile_version:
                version = str(profile_version)

    referenced = _resolve_references(document, environment)
    unknown_env = sorted(
        name
        for name in environment
        if name not in ENV_FIELD_NAMES and name not in referenced and not name.startswith(("MCP_", "CUSTOM_"))
    )
    if unknown_env:
        warnings.append(f"Unrecognized environment variables ignored: {', '.join(unknown_env)}")

    flat = to_flat(NestedConfiguration(document=document, environment=dict(environment)))
    flat.update(profile)
    parsed = parse_configuration(flat)
    warnings.extend(f"{error.path}: {error.message}" for error in parsed.errors)

    logger.info("configuration_imported", extra={"sources": sources, "warnings": len(warnings)})
    return ImportResult(
        configuration=configuration_to_json(parsed.configuration),
        version=validate_config_version(version),
        warnings=warnings,
        sources=sources,
    )
