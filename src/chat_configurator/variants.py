from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

STORAGE_BACKENDS = ("local", "s3", "azure_blob", "firebase")
ASSET_CLASSES = ("avatar", "image", "document")
MCP_TRANSPORTS = ("stdio", "websocket", "sse", "streamable-http")
REMOTE_MCP_TRANSPORTS = ("websocket", "sse", "streamable-http")
DEFAULT_MCP_TIMEOUT_MS = 30000
MCP_TIMEOUT_RANGE = (1000, 3_600_000)

_BACKEND_ALIASES = {
    "local": "local",
    "s3": "s3",
    "aws": "s3",
    "azure": "azure_blob",
    "azure_blob": "azure_blob",
    "azure blob": "azure_blob",
    "azure-blob": "azure_blob",
    "firebase": "firebase",
}

_TRANSPORT_ALIASES = {
    "stdio": "stdio",
    "websocket": "websocket",
    "ws": "websocket",
    "sse": "sse",
    "streamable-http": "streamable-http",
    "streamable_http": "streamable-http",
    "http": "streamable-http",
}


@dataclass(slots=True, frozen=True)
class VariantError:
    path: str
    message: str


# File storage strategy


@dataclass(slots=True, frozen=True)
class SingleStorageStrategy:
    backend: str

    def backend_for(self, asset: str) -> str:
        return self.backend

    def backends(self) -> tuple[str, ...]:
        return (self.backend,)

    def to_value(self) -> str:
        return self.backend


@dataclass(slots=True, frozen=True)
class PerAssetStorageStrategy:
    """Storage backend chosen per asset class, with a fallback for unlisted ones."""

    default: str = "local"
    avatar: str | None = None
    image: str | None = None
    document: str | None = None

    def backend_for(self, asset: str) -> str:
        return getattr(self, asset) or self.default

    def backends(self) -> tuple[str, ...]:
        used = {self.default, *(self.backend_for(asset) for asset in ASSET_CLASSES)}
        return tuple(backend for backend in STORAGE_BACKENDS if backend in used)

    def to_value(self) -> dict[str, str]:
        value = {"default": self.default}
        for asset in ASSET_CLASSES:
            backend = getattr(self, asset)
            if backend is not None:
                value[asset] = backend
        return value


FileStrategy = SingleStorageStrategy | PerAssetStorageStrategy


def normalize_backend(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    return _BACKEND_ALIASES.get(raw.strip().lower())


def parse_file_strategy(raw: Any, path: str = "fileStrategy") -> tuple[FileStrategy | None, list[VariantError]]:
    if isinstance(raw, (SingleStorageStrategy, PerAssetStorageStrategy)):
        return raw, []

    if isinstance(raw, str):
        backend = normalize_backend(raw)
        if backend is None:
            return None, [VariantError(path, f"must be one of {', '.join(STORAGE_BACKENDS)}")]
        return SingleStorageStrategy(backend), []

    if isinstance(raw, Mapping):
        errors: list[VariantError] = []
        assignments: dict[str, str] = {}
        for key, value in raw.items():
            if key not in ("default", *ASSET_CLASSES):
                errors.append(VariantError(f"{path}.{key}", "is not an asset class"))
                continue
            backend = normalize_backend(value)
            if backend is None:
                errors.append(VariantError(f"{path}.{key}", f"must be one of {', '.join(STORAGE_BACKENDS)}"))
                continue
            assignments[key] = backend
        if errors:
            return None, errors
        if not assignments:
            return None, [VariantError(path, "must assign a backend to at least one asset class")]
        return PerAssetStorageStrategy(**assignments), []

    return None, [VariantError(path, "must be a backend name or an asset-to-backend mapping")]


def _populated(flat: Mapping[str, Any], *names: str) -> bool:
    for name in names:
        value = flat.get(name)
        if isinstance(value, str):
            if value.strip():
                return True
        elif value not in (None, False, [], {}):
            return True
    return False


# Inference order matters: the first populated family wins.
FILE_STRATEGY_INFERENCE = (
    ("firebase", ("firebaseApiKey",)),
    ("azure_blob", ("azureStorageConnectionString",)),
    ("s3", ("s3BucketName", "s3AccessKeyId")),
)

EMAIL_SERVICE_INFERENCE = (
    ("mailgun", ("mailgunApiKey", "mailgunDomain")),
    ("smtp", ("emailService", "emailUsername", "emailPassword")),
)


def infer_file_strategy(flat: Mapping[str, Any]) -> FileStrategy:
    explicit = flat.get("fileStrategy")
    if explicit not in (None, ""):
        strategy, errors = parse_file_strategy(explicit)
        if strategy is not None and not errors:
            return strategy
    for backend, markers in FILE_STRATEGY_INFERENCE:
        if _populated(flat, *markers):
            return SingleStorageStrategy(backend)
    return SingleStorageStrategy("local")


def infer_email_service(flat: Mapping[str, Any]) -> str:
    explicit = flat.get("emailServiceType")
    if isinstance(explicit, str) and explicit.strip().lower() in ("none", "smtp", "mailgun"):
        return explicit.strip().lower()
    for service, markers in EMAIL_SERVICE_INFERENCE:
        if _populated(flat, *markers):
            return service
    return "none"


def infer_search_index(flat: Mapping[str, Any]) -> bool:
    explicit = flat.get("meiliEnabled")
    if isinstance(explicit, bool):
        return explicit
    return _populated(flat, "meiliHost", "meiliMasterKey")


# MCP servers


@dataclass(slots=True, frozen=True)
class McpServer:
    name: str
    type: str = "streamable-http"
    url: str | None = None
    command: str | None = None
    args: tuple[str, ...] = ()
    timeout: int = DEFAULT_MCP_TIMEOUT_MS
    init_timeout: int | None = None
    headers: tuple[tuple[str, str], ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    server_instructions: str | bool | None = None
    icon_path: str | None = None
    chat_menu: bool = True

    @property
    def is_remote(self) -> bool:
        return self.type in REMOTE_MCP_TRANSPORTS

    def settings(self) -> dict[str, Any]:
        """Settings without the name, in the target file's key spelling."""
        value: dict[str, Any] = {"type": self.type}
        if self.url is not None:
            value["url"] = self.url
        if self.command is not None:
            value["command"] = self.command
        if self.args:
            value["args"] = list(self.args)
        value["timeout"] = self.timeout
        if self.init_timeout is not None:
            value["initTimeout"] = self.init_timeout
        if self.headers:
            value["headers"] = dict(self.headers)
        if self.env:
            value["env"] = dict(self.env)
        if self.server_instructions is not None:
            value["serverInstructions"] = self.server_instructions
        if self.icon_path is not None:
            value["iconPath"] = self.icon_path
        value["chatMenu"] = self.chat_menu
        return value

    def to_entry(self) -> dict[str, Any]:
        return {"name": self.name, **self.settings()}


@dataclass(slots=True, frozen=True)
class McpServers:
    entries: tuple[McpServer, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def names(self) -> list[str]:
        return [server.name for server in self.entries]

    def to_list(self) -> list[dict[str, Any]]:
        return [server.to_entry() for server in self.entries]

    def to_mapping(self) -> dict[str, dict[str, Any]]:
        return {server.name: server.settings() for server in self.entries}


def _string_pairs(raw: Any, path: str, errors: list[VariantError]) -> tuple[tuple[str, str], ...]:
    if raw in (None, {}):
        return ()
    if not isinstance(raw, Mapping):
        errors.append(VariantError(path, "must be a mapping of strings"))
        return ()
    pairs = []
    for key, value in raw.items():
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            errors.append(VariantError(f"{path}.{key}", "must be a string"))
            continue
        pairs.append((str(key), str(value)))
    return tuple(pairs)


def _optional_text(raw: Any, path: str, errors: list[VariantError]) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        errors.append(VariantError(path, "must be a string"))
        return None
    return raw.strip() or None


def _timeout(raw: Any, path: str, default: int | None, errors: list[VariantError]) -> int | None:
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        errors.append(VariantError(path, "must be an integer"))
        return default
    try:
        value = int(raw)
    except ValueError:
        errors.append(VariantError(path, "must be an integer"))
        return default
    low, high = MCP_TIMEOUT_RANGE
    if not low <= value <= high:
        errors.append(VariantError(path, f"must be between {low} and {high}"))
        return default
    return value


def _parse_server(name: str, raw: Mapping[str, Any], path: str, errors: list[VariantError]) -> McpServer | None:
    start = len(errors)
    transport_raw = raw.get("type")
    if transport_raw is None:
        transport = "stdio" if raw.get("command") and not raw.get("url") else "streamable-http"
    else:
        transport = _TRANSPORT_ALIASES.get(str(transport_raw).strip().lower(), "")
        if not transport:
            errors.append(VariantError(f"{path}.type", f"must be one of {', '.join(MCP_TRANSPORTS)}"))

    url = _optional_text(raw.get("url"), f"{path}.url", errors)
    command = _optional_text(raw.get("command"), f"{path}.command", errors)
    args_raw = raw.get("args") or []
    if not isinstance(args_raw, (list, tuple)) or not all(isinstance(item, str) for item in args_raw):
        errors.append(VariantError(f"{path}.args", "must be a list of strings"))
        args_raw = []

    if transport in REMOTE_MCP_TRANSPORTS and not url:
        errors.append(VariantError(f"{path}.url", f"is required for {transport} servers"))
    if transport == "stdio" and not command:
        errors.append(VariantError(f"{path}.command", "is required for stdio servers"))

    instructions = raw.get("serverInstructions", raw.get("instructions"))
    if instructions is not None and not isinstance(instructions, (str, bool)):
        errors.append(VariantError(f"{path}.serverInstructions", "must be text or a boolean"))
        instructions = None
    if isinstance(instructions, str) and not instructions.strip():
        instructions = None

    chat_menu = raw.get("chatMenu", True)
    if not isinstance(chat_menu, bool):
        errors.append(VariantError(f"{path}.chatMenu", "must be a boolean"))
        chat_menu = True

    server = McpServer(
        name=name,
        type=transport or "streamable-http",
        url=url,
        command=command,
        args=tuple(args_raw),
        timeout=_timeout(raw.get("timeout"), f"{path}.timeout", DEFAULT_MCP_TIMEOUT_MS, errors),
        init_timeout=_timeout(raw.get("initTimeout"), f"{path}.initTimeout", None, errors),
        headers=_string_pairs(raw.get("headers"), f"{path}.headers", errors),
        env=_string_pairs(raw.get("env"), f"{path}.env", errors),
        server_instructions=instructions,
        icon_path=_optional_text(raw.get("iconPath"), f"{path}.iconPath", errors),
        chat_menu=chat_menu,
    )
    return server if len(errors) == start else None


def parse_mcp_servers(raw: Any, path: str = "mcpServers") -> tuple[McpServers, list[VariantError]]:
    """Accept either the list form or the name-keyed mapping form."""
    if isinstance(raw, McpServers):
        return raw, []
    if raw is None:
        return McpServers(), []

    errors: list[VariantError] = []
    named: list[tuple[str, Any, str]] = []
    if isinstance(raw, Mapping):
        named = [(str(name), settings, f"{path}.{name}") for name, settings in raw.items()]
    elif isinstance(raw, (list, tuple)):
        for index, entry in enumerate(raw):
            entry_path = f"{path}[{index}]"
            if not isinstance(entry, Mapping):
                errors.append(VariantError(entry_path, "must be an object"))
                continue
            name = str(entry.get("name") or "").strip()
            if not name:
                errors.append(VariantError(f"{entry_path}.name", "is required"))
                continue
            named.append((name, entry, entry_path))
    else:
        return McpServers(), [VariantError(path, "must be a list of servers or a name-keyed mapping")]

    seen: set[str] = set()
    servers: list[McpServer] = []
    for name, settings, entry_path in named:
        if not isinstance(settings, Mapping):
            errors.append(VariantError(entry_path, "must be an object"))
            continue
        if name in seen:
            errors.append(VariantError(f"{entry_path}.name", f"duplicates server '{name}'"))
            continue
        seen.add(name)
        server = _parse_server(name, settings, entry_path, errors)
        if server is not None:
            servers.append(server)
    return McpServers(tuple(servers)), errors
