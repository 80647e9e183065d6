from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .security import (
    custom_endpoint_env_name,
    is_placeholder,
    is_routed_api_key,
    is_routed_mcp_value,
    mcp_env_name,
)
from .variants import (
    MCP_TRANSPORTS,
    STORAGE_BACKENDS,
    McpServers,
    PerAssetStorageStrategy,
    SingleStorageStrategy,
    infer_email_service,
    infer_file_strategy,
    infer_search_index,
    parse_file_strategy,
    parse_mcp_servers,
)

CONFIG_VERSION = "1.2.8"
TOOL_VERSION = "1.0.0"

CATEGORIES = (
    "Server",
    "Security",
    "Database",
    "UI/Visibility",
    "Models/Specs",
    "Endpoints",
    "Agents",
    "Files",
    "Rate Limits",
    "Authentication",
    "Memory",
    "Search",
    "MCP",
    "OCR",
    "Actions",
    "Temp Chats",
)

FIELD_KINDS = (
    "string",
    "integer",
    "number",
    "boolean",
    "choice",
    "string_list",
    "endpoint_list",
    "file_strategy",
    "mcp_servers",
)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class FieldSpec:
    name: str
    kind: str
    category: str
    label: str
    default: Any = None
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()
    length: int | None = None
    min_length: int | None = None
    secret: bool = False
    required: bool = False
    env: str | None = None
    pattern: str | None = None
    infer: Callable[[Mapping[str, Any]], Any] | None = None

    def default_value(self) -> Any:
        if self.kind == "mcp_servers":
            return McpServers()
        if isinstance(self.default, tuple):
            return list(self.default)
        return self.default

    def describe(self) -> dict[str, Any]:
        description: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "category": self.category,
            "label": self.label,
            "default": None if self.infer is not None else self.default_value(),
            "secret": self.secret,
            "required": self.required,
            "inferred": self.infer is not None,
        }
        for key, value in (
            ("minimum", self.minimum),
            ("maximum", self.maximum),
            ("length", self.length),
            ("minLength", self.min_length),
            ("env", self.env),
            ("pattern", self.pattern),
        ):
            if value is not None:
                description[key] = value
        if self.choices:
            description["choices"] = list(self.choices)
        return description


def _text(
    name: str,
    category: str,
    label: str,
    default: str | None = None,
    *,
    env: str | None = None,
    required: bool = False,
    pattern: str | None = None,
) -> FieldSpec:
    return FieldSpec(name, "string", category, label, default=default, env=env, required=required, pattern=pattern)


def _secret(
    name: str,
    category: str,
    label: str,
    default: str | None = None,
    *,
    env: str | None = None,
    length: int | None = None,
    min_length: int | None = None,
    required: bool = False,
) -> FieldSpec:
    return FieldSpec(
        name,
        "string",
        category,
        label,
        default=default,
        env=env,
        length=length,
        min_length=min_length,
        secret=True,
        required=required,
    )


def _flag(name: str, category: str, label: str, default: bool, *, env: str | None = None) -> FieldSpec:
    return FieldSpec(name, "boolean", category, label, default=default, env=env)


def _int(
    name: str,
    category: str,
    label: str,
    default: int,
    minimum: int,
    maximum: int,
    *,
    env: str | None = None,
) -> FieldSpec:
    return FieldSpec(name, "integer", category, label, default=default, minimum=minimum, maximum=maximum, env=env)


def _choice(
    name: str,
    category: str,
    label: str,
    default: str,
    choices: tuple[str, ...],
    *,
    infer: Callable[[Mapping[str, Any]], Any] | None = None,
) -> FieldSpec:
    return FieldSpec(name, "choice", category, label, default=default, choices=tuple(choices), infer=infer)


def _list(name: str, category: str, label: str, default: tuple[str, ...] = ()) -> FieldSpec:
    return FieldSpec(name, "string_list", category, label, default=tuple(default))


VERSION_PATTERN = r"^\d+\.\d+\.\d+(-[0-9A-Za-z.]+)?$"

# Header values for the static assets and the index page, by preset name.
CACHING_PRESETS: dict[str, dict[str, Any]] = {
    "performance": {
        "cache": True,
        "staticCacheMaxAge": 31_536_000,
        "staticCacheSMaxAge": 31_536_000,
        "indexCacheControl": "public, max-age=86400",
        "indexPragma": "cache",
        "indexExpires": "86400",
    },
    "balanced": {
        "cache": True,
        "staticCacheMaxAge": 604_800,
        "staticCacheSMaxAge": 604_800,
        "indexCacheControl": "public, max-age=3600",
        "indexPragma": "cache",
        "indexExpires": "3600",
    },
    "development": {
        "cache": True,
        "staticCacheMaxAge": 3600,
        "staticCacheSMaxAge": 3600,
        "indexCacheControl": "no-cache, must-revalidate",
        "indexPragma": "no-cache",
        "indexExpires": "0",
    },
    "none": {
        "cache": False,
        "staticCacheMaxAge": 0,
        "staticCacheSMaxAge": 0,
        "indexCacheControl": "no-store, no-cache, must-revalidate",
        "indexPragma": "no-cache",
        "indexExpires": "0",
    },
}
_DEFAULT_CACHING = CACHING_PRESETS["balanced"]


FIELDS: tuple[FieldSpec, ...] = (
    # Server
    _text("host", "Server", "Host", "0.0.0.0", env="HOST", required=True),
    _int("port", "Server", "Port", 3080, 1, 65535, env="PORT"),
    _text("domainClient", "Server", "Client Domain", "http://localhost:3080", env="DOMAIN_CLIENT"),
    _text("domainServer", "Server", "Server Domain", "http://localhost:3080", env="DOMAIN_SERVER"),
    _text("appTitle", "Server", "Application Title", "LibreChat", env="APP_TITLE"),
    _flag("noIndex", "Server", "Block Search Engine Indexing", True, env="NO_INDEX"),
    _flag("debugLogging", "Server", "Debug Logging", False, env="DEBUG_LOGGING"),
    _text("configVer", "Server", "Config Version", CONFIG_VERSION, required=True, pattern=VERSION_PATTERN),
    _flag("cache", "Server", "Cache", _DEFAULT_CACHING["cache"]),
    _int("staticCacheMaxAge", "Server", "Static Cache Max Age (s)", _DEFAULT_CACHING["staticCacheMaxAge"], 0, 31_536_000, env="STATIC_CACHE_MAX_AGE"),
    _int("staticCacheSMaxAge", "Server", "Static Cache S-Max-Age (s)", _DEFAULT_CACHING["staticCacheSMaxAge"], 0, 31_536_000, env="STATIC_CACHE_S_MAX_AGE"),
    _text("indexCacheControl", "Server", "Index Cache-Control", _DEFAULT_CACHING["indexCacheControl"], env="INDEX_CACHE_CONTROL"),
    _text("indexPragma", "Server", "Index Pragma", _DEFAULT_CACHING["indexPragma"], env="INDEX_PRAGMA"),
    _text("indexExpires", "Server", "Index Expires", _DEFAULT_CACHING["indexExpires"], env="INDEX_EXPIRES"),
    _text("appImage", "Server", "Application Image", "ghcr.io/danny-avila/librechat-dev:latest", required=True),
    # Security
    _secret("jwtSecret", "Security", "JWT Secret", env="JWT_SECRET", min_length=32, required=True),
    _secret("jwtRefreshSecret", "Security", "JWT Refresh Secret", env="JWT_REFRESH_SECRET", min_length=32, required=True),
    _secret("credsKey", "Security", "Credentials Key", env="CREDS_KEY", length=32, required=True),
    _secret("credsIV", "Security", "Credentials IV", env="CREDS_IV", length=16, required=True),
    _flag("secureImageLinks", "Security", "Secure Image Links", False),
    # Database
    _text("mongoUri", "Database", "MongoDB URI", env="MONGO_URI"),
    _text("mongoRootUsername", "Database", "MongoDB Root Username", "admin", env="MONGO_ROOT_USERNAME", required=True),
    _secret("mongoRootPassword", "Database", "MongoDB Root Password", "password123", env="MONGO_ROOT_PASSWORD"),
    _text("mongoDbName", "Database", "MongoDB Database Name", "LibreChat", env="MONGO_DB_NAME", required=True),
    _flag("redisEnabled", "Database", "Use Redis", False, env="USE_REDIS"),
    _text("redisUri", "Database", "Redis URI", env="REDIS_URI"),
    FieldSpec("meiliEnabled", "boolean", "Database", "Search Index (MeiliSearch)", default=False, env="SEARCH", infer=infer_search_index),
    _text("meiliHost", "Database", "MeiliSearch Host", "http://meilisearch:7700", env="MEILI_HOST"),
    _secret("meiliMasterKey", "Database", "MeiliSearch Master Key", env="MEILI_MASTER_KEY"),
    _flag("meiliNoAnalytics", "Database", "Disable MeiliSearch Analytics", True, env="MEILI_NO_ANALYTICS"),
    # UI/Visibility
    _flag("showModelSelect", "UI/Visibility", "Model Select", True),
    _flag("showParameters", "UI/Visibility", "Parameters", True),
    _flag("showSidePanel", "UI/Visibility", "Side Panel", True),
    _flag("showPresets", "UI/Visibility", "Presets", True),
    _flag("showPrompts", "UI/Visibility", "Prompts", True),
    _flag("showBookmarks", "UI/Visibility", "Bookmarks", True),
    _flag("showMultiConvo", "UI/Visibility", "Multi-Conversation", False),
    _flag("showAgents", "UI/Visibility", "Agents", True),
    _flag("showWebSearch", "UI/Visibility", "Web Search", True),
    _flag("showFileSearch", "UI/Visibility", "File Search", True),
    _flag("showFileCitations", "UI/Visibility", "File Citations", True),
    _flag("showRunCode", "UI/Visibility", "Run Code", True),
    _text("customWelcome", "UI/Visibility", "Custom Welcome Message"),
    _text("privacyPolicyUrl", "UI/Visibility", "Privacy Policy URL"),
    _text("termsOfServiceUrl", "UI/Visibility", "Terms of Service URL"),
    # Models/Specs
    _flag("modelSpecs", "Models/Specs", "Model Specs", False),
    _flag("enforceModelSpecs", "Models/Specs", "Enforce Model Specs", False),
    _text("defaultModel", "Models/Specs", "Default Model", "gpt-4", required=True),
    _flag("addedEndpoints", "Models/Specs", "Show Endpoints Menu", True),
    _choice("imageOutputType", "Models/Specs", "Image Output Type", "url", ("url", "base64", "png", "webp", "jpeg")),
    _flag("enableConversations", "Models/Specs", "Conversations", True),
    # Endpoints
    _secret("openaiApiKey", "Endpoints", "OpenAI API Key", env="OPENAI_API_KEY"),
    _secret("anthropicApiKey", "Endpoints", "Anthropic API Key", env="ANTHROPIC_API_KEY"),
    _secret("googleApiKey", "Endpoints", "Google API Key", env="GOOGLE_KEY"),
    _flag("streaming", "Endpoints", "Streaming Responses", True),
    _flag("titleConvo", "Endpoints", "Title Conversations", True),
    _text("titleModel", "Endpoints", "Title Model", "gpt-3.5-turbo"),
    FieldSpec("customEndpoints", "endpoint_list", "Endpoints", "Custom Endpoints", default=()),
    _choice("sttProvider", "Endpoints", "Speech-to-Text Provider", "none", ("none", "openai")),
    _text("sttModel", "Endpoints", "Speech-to-Text Model", "whisper-1"),
    _secret("sttApiKey", "Endpoints", "Speech-to-Text API Key", env="STT_API_KEY"),
    _choice("ttsProvider", "Endpoints", "Text-to-Speech Provider", "none", ("none", "openai")),
    _text("ttsModel", "Endpoints", "Text-to-Speech Model", "tts-1"),
    _text("ttsVoice", "Endpoints", "Text-to-Speech Voice", "alloy"),
    _secret("ttsApiKey", "Endpoints", "Text-to-Speech API Key", env="TTS_API_KEY"),
    # Agents
    _int("agentDefaultRecursionLimit", "Agents", "Default Recursion Limit", 5, 1, 50),
    _int("agentMaxRecursionLimit", "Agents", "Max Recursion Limit", 10, 1, 100),
    _list("agentAllowedProviders", "Agents", "Allowed Providers", ("openAI",)),
    _list("agentAllowedCapabilities", "Agents", "Allowed Capabilities", ("execute_code", "web_search", "file_search")),
    _int("agentCitationsTotalLimit", "Agents", "Citations Total Limit", 10, 1, 100),
    _int("agentCitationsPerFileLimit", "Agents", "Citations Per File Limit", 3, 1, 20),
    FieldSpec("agentCitationsThreshold", "number", "Agents", "Citations Relevance Threshold", default=0.7, minimum=0, maximum=1),
    # Files
    FieldSpec("fileStrategy", "file_strategy", "Files", "File Strategy", infer=infer_file_strategy),
    _int("filesMaxSizeMB", "Files", "Max File Size (MB)", 10, 1, 1000),
    _list("filesAllowedMimeTypes", "Files", "Allowed MIME Types", ("text/plain", "application/pdf", "image/jpeg", "image/png")),
    _int("filesMaxFilesPerRequest", "Files", "Max Files Per Request", 5, 1, 20),
    _flag("filesClientResizeImages", "Files", "Client Image Resize", True),
    _text("fileUploadPath", "Files", "Upload Path", "./uploads"),
    _text("cdnProvider", "Files", "CDN Provider", env="CDN_PROVIDER"),
    _secret("firebaseApiKey", "Files", "Firebase API Key", env="FIREBASE_API_KEY"),
    _text("firebaseAuthDomain", "Files", "Firebase Auth Domain", env="FIREBASE_AUTH_DOMAIN"),
    _text("firebaseProjectId", "Files", "Firebase Project ID", env="FIREBASE_PROJECT_ID"),
    _text("firebaseStorageBucket", "Files", "Firebase Storage Bucket", env="FIREBASE_STORAGE_BUCKET"),
    _text("firebaseMessagingSenderId", "Files", "Firebase Messaging Sender ID", env="FIREBASE_MESSAGING_SENDER_ID"),
    _text("firebaseAppId", "Files", "Firebase App ID", env="FIREBASE_APP_ID"),
    _secret("azureStorageConnectionString", "Files", "Azure Storage Connection String", env="AZURE_STORAGE_CONNECTION_STRING"),
    _flag("azureStoragePublicAccess", "Files", "Azure Public Access", False, env="AZURE_STORAGE_PUBLIC_ACCESS"),
    _text("azureContainerName", "Files", "Azure Container Name", "files", env="AZURE_CONTAINER_NAME"),
    _text("s3AccessKeyId", "Files", "S3 Access Key ID", env="AWS_ACCESS_KEY_ID"),
    _secret("s3SecretAccessKey", "Files", "S3 Secret Access Key", env="AWS_SECRET_ACCESS_KEY"),
    _text("s3BucketName", "Files", "S3 Bucket Name", env="AWS_BUCKET_NAME"),
    _text("s3Region", "Files", "S3 Region", env="AWS_REGION"),
    # Rate Limits
    _int("rateLimitsPerUser", "Rate Limits", "Messages Per User", 100, 1, 10000, env="MESSAGE_USER_MAX"),
    _int("rateLimitsPerIP", "Rate Limits", "Messages Per IP", 500, 1, 10000, env="MESSAGE_IP_MAX"),
    _int("rateLimitsUploads", "Rate Limits", "Uploads Per User", 50, 1, 1000),
    _int("rateLimitsImports", "Rate Limits", "Imports Per User", 10, 1, 1000),
    _int("rateLimitsTTS", "Rate Limits", "TTS Requests Per User", 100, 1, 1000),
    _int("rateLimitsSTT", "Rate Limits", "STT Requests Per User", 100, 1, 1000),
    # Authentication
    _flag("enableRegistration", "Authentication", "Allow Registration", True, env="ALLOW_REGISTRATION"),
    _flag("allowEmailLogin", "Authentication", "Allow Email Login", True, env="ALLOW_EMAIL_LOGIN"),
    _flag("allowSocialLogin", "Authentication", "Allow Social Login", False, env="ALLOW_SOCIAL_LOGIN"),
    _int("minPasswordLength", "Authentication", "Minimum Password Length", 8, 6, 128, env="MIN_PASSWORD_LENGTH"),
    _list("authAllowedDomains", "Authentication", "Allowed Registration Domains"),
    _list("authSocialLogins", "Authentication", "Social Logins"),
    _list("authLoginOrder", "Authentication", "Login Order", ("email",)),
    _int("sessionExpiry", "Authentication", "Session Expiry (ms)", 900000, 60000, 86_400_000, env="SESSION_EXPIRY"),
    _int("refreshTokenExpiry", "Authentication", "Refresh Token Expiry (ms)", 604800000, 60000, 31_536_000_000, env="REFRESH_TOKEN_EXPIRY"),
    _choice("emailServiceType", "Authentication", "Email Service", "none", ("none", "smtp", "mailgun"), infer=infer_email_service),
    _text("emailService", "Authentication", "SMTP Service Provider", env="EMAIL_SERVICE"),
    _text("emailUsername", "Authentication", "SMTP Username", env="EMAIL_USERNAME"),
    _secret("emailPassword", "Authentication", "SMTP Password", env="EMAIL_PASSWORD"),
    _text("emailFrom", "Authentication", "Email From Address", "noreply@librechat.ai", env="EMAIL_FROM"),
    _text("emailFromName", "Authentication", "Email From Name", "LibreChat", env="EMAIL_FROM_NAME"),
    _secret("mailgunApiKey", "Authentication", "Mailgun API Key", env="MAILGUN_API_KEY"),
    _text("mailgunDomain", "Authentication", "Mailgun Domain", env="MAILGUN_DOMAIN"),
    _text("mailgunHost", "Authentication", "Mailgun Host", "https://api.mailgun.net", env="MAILGUN_HOST"),
    _text("googleClientId", "Authentication", "Google Client ID", env="GOOGLE_CLIENT_ID"),
    _secret("googleClientSecret", "Authentication", "Google Client Secret", env="GOOGLE_CLIENT_SECRET"),
    _text("githubClientId", "Authentication", "GitHub Client ID", env="GITHUB_CLIENT_ID"),
    _secret("githubClientSecret", "Authentication", "GitHub Client Secret", env="GITHUB_CLIENT_SECRET"),
    _text("discordClientId", "Authentication", "Discord Client ID", env="DISCORD_CLIENT_ID"),
    _secret("discordClientSecret", "Authentication", "Discord Client Secret", env="DISCORD_CLIENT_SECRET"),
    _text("openidIssuer", "Authentication", "OpenID Issuer", env="OPENID_ISSUER"),
    _text("openidClientId", "Authentication", "OpenID Client ID", env="OPENID_CLIENT_ID"),
    _secret("openidClientSecret", "Authentication", "OpenID Client Secret", env="OPENID_CLIENT_SECRET"),
    # Memory
    _flag("memoryEnabled", "Memory", "Memory", False),
    _flag("memoryPersonalization", "Memory", "Personalization", False),
    _int("memoryWindowSize", "Memory", "Message Window Size", 4000, 1000, 100000),
    _int("memoryMaxTokens", "Memory", "Token Limit", 10000, 1000, 50000),
    _text("memoryAgent", "Memory", "Memory Agent Provider", "openAI"),
    # Search
    _choice("searchProvider", "Search", "Search Provider", "serper", ("serper", "searxng")),
    _choice("searchScraper", "Search", "Scraper", "serper", ("firecrawl", "serper")),
    _choice("searchReranker", "Search", "Reranker", "jina", ("jina", "cohere")),
    _flag("searchSafeSearch", "Search", "Safe Search", True),
    _int("searchTimeout", "Search", "Scraper Timeout (ms)", 10000, 1000, 60000),
    _secret("serperApiKey", "Search", "Serper API Key", env="SERPER_API_KEY"),
    _text("searxngInstanceUrl", "Search", "SearXNG Instance URL", env="SEARXNG_INSTANCE_URL"),
    _secret("searxngApiKey", "Search", "SearXNG API Key", env="SEARXNG_API_KEY"),
    _secret("firecrawlApiKey", "Search", "Firecrawl API Key", env="FIRECRAWL_API_KEY"),
    _text("firecrawlApiUrl", "Search", "Firecrawl API URL", env="FIRECRAWL_API_URL"),
    _secret("jinaApiKey", "Search", "Jina API Key", env="JINA_API_KEY"),
    _secret("cohereApiKey", "Search", "Cohere API Key", env="COHERE_API_KEY"),
    # MCP
    FieldSpec("mcpServers", "mcp_servers", "MCP", "MCP Servers", default=()),
    # OCR
    _choice("ocrProvider", "OCR", "OCR Provider", "mistral", ("mistral", "custom")),
    _text("ocrModel", "OCR", "OCR Model", "mistral-ocr-latest"),
    _text("ocrApiBase", "OCR", "OCR API Base URL", env="OCR_BASEURL"),
    _secret("ocrApiKey", "OCR", "OCR API Key", env="OCR_API_KEY"),
    # Actions
    _list("actionsAllowedDomains", "Actions", "Allowed Action Domains"),
    # Temp Chats
    _int("temporaryChatsRetentionHours", "Temp Chats", "Retention (hours)", 720, 1, 8760),
)

FIELDS_BY_NAME: dict[str, FieldSpec] = {spec.name: spec for spec in FIELDS}
SECRET_FIELDS = tuple(spec.name for spec in FIELDS if spec.secret)
SECRET_ENV_NAMES = frozenset(spec.env for spec in FIELDS if spec.secret and spec.env)
ENV_FIELD_NAMES = {spec.env: spec.name for spec in FIELDS if spec.env}


def fields_in_category(category: str) -> list[FieldSpec]:
    return [spec for spec in FIELDS if spec.category == category]


def caching_preset(configuration: Mapping[str, Any]) -> str:
    """Name of the caching preset the configuration matches, else ``custom``."""
    for name, values in CACHING_PRESETS.items():
        if all(configuration.get(key, FIELDS_BY_NAME[key].default) == value for key, value in values.items()):
            return name
    return "custom"


def apply_caching_preset(configuration: Mapping[str, Any], preset: str) -> dict[str, Any]:
    if preset not in CACHING_PRESETS:
        raise ValueError(f"Unknown caching preset: {preset}")
    return {**configuration, **CACHING_PRESETS[preset]}


@dataclass(slots=True, frozen=True)
class FieldError:
    path: str
    message: str

    @property
    def field(self) -> str:
        head = self.path.split(".", 1)[0]
        return head.split("[", 1)[0]

    @property
    def category(self) -> str:
        spec = FIELDS_BY_NAME.get(self.field)
        return spec.category if spec else "Server"

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message, "category": self.category}


@dataclass(slots=True)
class ParseResult:
    configuration: dict[str, Any]
    errors: list[FieldError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        return "; ".join(str(error) for error in self.errors)


class _Invalid(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _coerce_string(spec: FieldSpec, raw: Any) -> str | None:
    if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
        raise _Invalid("must be a string")
    text = str(raw)
    if spec.secret and is_placeholder(text):
        return None
    if not text.strip():
        return None
    if spec.pattern is not None and not re.fullmatch(spec.pattern, text.strip()):
        raise _Invalid("does not match the expected format")
    return text if spec.secret else text.strip()


def _coerce_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
        return raw.strip().lower() == "true"
    raise _Invalid("must be a boolean")


def _coerce_number(spec: FieldSpec, raw: Any) -> int | float:
    if isinstance(raw, bool):
        raise _Invalid("must be a number")
    if isinstance(raw, str):
        try:
            raw = float(raw.strip()) if spec.kind == "number" else int(raw.strip())
        except ValueError as exc:
            raise _Invalid("must be a number" if spec.kind == "number" else "must be an integer") from exc
    if not isinstance(raw, (int, float)):
        raise _Invalid("must be a number")
    if spec.kind == "integer":
        if isinstance(raw, float):
            if not raw.is_integer():
                raise _Invalid("must be an integer")
            raw = int(raw)
    if spec.minimum is not None and spec.maximum is not None and not spec.minimum <= raw <= spec.maximum:
        low = int(spec.minimum) if float(spec.minimum).is_integer() else spec.minimum
        high = int(spec.maximum) if float(spec.maximum).is_integer() else spec.maximum
        raise _Invalid(f"must be between {low} and {high}")
    return raw


def _coerce_string_list(raw: Any) -> list[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple)):
        raise _Invalid("must be a list of strings")
    items = []
    for item in raw:
        if not isinstance(item, str):
            raise _Invalid("must be a list of strings")
        if item.strip():
            items.append(item.strip())
    return items


def _coerce_choice(spec: FieldSpec, raw: Any) -> str:
    if not isinstance(raw, str):
        raise _Invalid(f"must be one of {', '.join(spec.choices)}")
    lowered = {choice.lower(): choice for choice in spec.choices}
    candidate = lowered.get(raw.strip().lower())
    if candidate is None:
        raise _Invalid(f"must be one of {', '.join(spec.choices)}")
    return candidate


def _parse_endpoints(raw: Any, errors: list[FieldError]) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        errors.append(FieldError("customEndpoints", "must be a list of endpoints"))
        return []
    endpoints: list[dict[str, Any]] = []
    names: set[str] = set()
    for index, entry in enumerate(raw):
        path = f"customEndpoints[{index}]"
        if not isinstance(entry, Mapping):
            errors.append(FieldError(path, "must be an object"))
            continue
        name = str(entry.get("name") or "").strip()
        base_url = str(entry.get("baseURL") or "").strip()
        if not name:
            errors.append(FieldError(f"{path}.name", "is required"))
            continue
        if name in names:
            errors.append(FieldError(f"{path}.name", f"duplicates endpoint '{name}'"))
            continue
        if not base_url:
            errors.append(FieldError(f"{path}.baseURL", "is required"))
            continue
        names.add(name)
        models = entry.get("models") or []
        if isinstance(models, Mapping):
            models = models.get("default") or []
        try:
            models = _coerce_string_list(models)
        except _Invalid as exc:
            errors.append(FieldError(f"{path}.models", exc.message))
            models = []
        endpoint = {
            "name": name,
            "apiKey": str(entry.get("apiKey") or "").strip() or "user_provided",
            "baseURL": base_url,
            "models": models,
            "fetchModels": bool(entry.get("fetchModels", False)),
            "titleConvo": bool(entry.get("titleConvo", True)),
        }
        for optional in ("titleModel", "modelDisplayLabel"):
            value = str(entry.get(optional) or "").strip()
            if value:
                endpoint[optional] = value
        endpoints.append(endpoint)
    return endpoints


def _parse_field(spec: FieldSpec, raw: Any, errors: list[FieldError]) -> Any:
    if spec.kind == "file_strategy":
        strategy, variant_errors = parse_file_strategy(raw, spec.name)
        errors.extend(FieldError(error.path, error.message) for error in variant_errors)
        return strategy
    if spec.kind == "mcp_servers":
        servers, variant_errors = parse_mcp_servers(raw, spec.name)
        errors.extend(FieldError(error.path, error.message) for error in variant_errors)
        return servers
    if spec.kind == "endpoint_list":
        return _parse_endpoints(raw, errors)
    if spec.kind == "string":
        return _coerce_string(spec, raw)
    if spec.kind == "boolean":
        return _coerce_boolean(raw)
    if spec.kind in ("integer", "number"):
        return _coerce_number(spec, raw)
    if spec.kind == "string_list":
        return _coerce_string_list(raw)
    if spec.kind == "choice":
        return _coerce_choice(spec, raw)
    raise ValueError(f"Unknown field kind: {spec.kind}")


def _check_length(spec: FieldSpec, value: str, errors: list[FieldError]) -> None:
    if spec.length is not None and len(value) != spec.length:
        errors.append(FieldError(spec.name, f"must be exactly {spec.length} characters"))
    if spec.min_length is not None and len(value) < spec.min_length:
        errors.append(FieldError(spec.name, f"must be at least {spec.min_length} characters"))


def _check_routed_env_names(configuration: Mapping[str, Any], errors: list[FieldError]) -> None:
    """Secrets moved into ``.env`` need names no other setting already uses."""
    claimed: dict[str, str] = {env: f"{name} setting" for env, name in ENV_FIELD_NAMES.items()}

    def claim(env_name: str, path: str) -> None:
        owner = claimed.get(env_name)
        if owner is not None:
            errors.append(FieldError(path, f"environment variable {env_name} is already used by {owner}"))
            return
        claimed[env_name] = path

    for index, endpoint in enumerate(configuration.get("customEndpoints") or []):
        if is_routed_api_key(endpoint.get("apiKey")):
            claim(custom_endpoint_env_name(endpoint["name"]), f"customEndpoints[{index}].name")

    servers = configuration.get("mcpServers")
    for index, server in enumerate(servers if isinstance(servers, McpServers) else ()):
        for section in ("headers", "env"):
            for key, value in getattr(server, section):
                if is_routed_mcp_value(key, value):
                    claim(mcp_env_name(server.name, key), f"mcpServers[{index}].{section}.{key}")


def parse_configuration(data: Any, strict: bool = False) -> ParseResult:
    """Parse a flat configuration, applying defaults and normalizing union shapes.

    Invalid fields are reported and fall back to their default so dependent
    rules can still run. Secrets are only required when ``strict`` is set;
    when present they must satisfy their length constraints either way.
    """
    if isinstance(data, ParseResult):
        data = data.configuration
    if not isinstance(data, Mapping):
        return ParseResult(configuration=default_configuration(), errors=[FieldError("configuration", "must be an object")])

    errors: list[FieldError] = []
    configuration: dict[str, Any] = {}
    for spec in FIELDS:
        raw = data.get(spec.name)
        if raw is None:
            value = spec.infer(data) if spec.infer is not None else spec.default_value()
        else:
            try:
                value = _parse_field(spec, raw, errors)
            except _Invalid as exc:
                errors.append(FieldError(spec.name, exc.message))
                value = spec.infer(data) if spec.infer is not None else spec.default_value()
            else:
                if value is None and spec.infer is not None:
                    value = spec.infer(data)
                elif value is None and not spec.secret:
                    if spec.required:
                        errors.append(FieldError(spec.name, "is required"))
                    value = spec.default_value()

        if spec.kind == "string" and value is not None:
            _check_length(spec, value, errors)
        if value is None and spec.secret and spec.required and strict:
            errors.append(FieldError(spec.name, "is required"))
        configuration[spec.name] = value

    _check_routed_env_names(configuration, errors)
    unknown = sorted(key for key in data if key not in FIELDS_BY_NAME)
    if unknown:
        logger.debug("configuration_unknown_keys", extra={"keys": unknown})
    return ParseResult(configuration=configuration, errors=errors)


def default_configuration() -> dict[str, Any]:
    return parse_configuration({}).configuration


def configuration_to_json(configuration: Mapping[str, Any]) -> dict[str, Any]:
    """Plain JSON shape of a parsed configuration, in field-table order."""
    payload: dict[str, Any] = {}
    for spec in FIELDS:
        value = configuration.get(spec.name)
        if isinstance(value, (SingleStorageStrategy, PerAssetStorageStrategy)):
            value = value.to_value()
        elif isinstance(value, McpServers):
            value = value.to_list()
        elif isinstance(value, list):
            value = [dict(item) if isinstance(item, Mapping) else item for item in value]
        payload[spec.name] = value
    return payload


def schema_document() -> dict[str, Any]:
    return {
        "configVersion": CONFIG_VERSION,
        "toolVersion": TOOL_VERSION,
        "categories": list(CATEGORIES),
        "storageBackends": list(STORAGE_BACKENDS),
        "mcpTransports": list(MCP_TRANSPORTS),
        "cachingPresets": {name: dict(values) for name, values in CACHING_PRESETS.items()},
        "fields": [spec.describe() for spec in FIELDS],
    }
