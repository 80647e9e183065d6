from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .schema import FIELDS, FIELDS_BY_NAME, FieldSpec, parse_configuration
from .variants import (
    McpServers,
    infer_email_service,
    infer_file_strategy,
    infer_search_index,
)

logger = logging.getLogger(__name__)

OCR_STRATEGIES = {"mistral": "mistral_ocr", "custom": "custom_ocr"}

_MISSING = object()


class MappingCoverageError(RuntimeError):
    """Raised when the field table and the mapping rules drift apart."""


@dataclass(slots=True, frozen=True)
class MappingRule:
    """One nested destination and the flat field(s) it is derived from.

    ``forward`` defaults to the identity of a single source. ``inverse`` turns
    the nested value back into flat fields; identity rules invert on their
    own. Rules marked ``reversible=False`` are derived copies and never feed
    ``to_flat``.
    """

    target: tuple[str, ...]
    sources: tuple[str, ...] = ()
    forward: Callable[..., Any] | None = None
    inverse: Callable[[Any], dict[str, Any]] | None = None
    when: Callable[[Mapping[str, Any]], bool] | None = None
    reversible: bool = True
    constant: Any = None

    @property
    def one_to_one(self) -> bool:
        return self.reversible and len(self.sources) == 1

    def applies(self, configuration: Mapping[str, Any]) -> bool:
        return self.when is None or bool(self.when(configuration))

    def value(self, configuration: Mapping[str, Any]) -> Any:
        if not self.sources:
            return self.constant
        values = [configuration.get(source) for source in self.sources]
        if self.forward is None:
            return values[0]
        return self.forward(*values)

    def restore(self, value: Any) -> dict[str, Any]:
        if not self.reversible or not self.sources:
            return {}
        if self.inverse is not None:
            return self.inverse(value)
        return {self.sources[0]: value}


@dataclass(slots=True)
class NestedConfiguration:
    document: dict[str, Any] = field(default_factory=dict)
    environment: dict[str, Any] = field(default_factory=dict)
    services: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"document": self.document, "environment": self.environment, "services": self.services}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> NestedConfiguration:
        return cls(
            document=dict(payload.get("document") or {}),
            environment=dict(payload.get("environment") or {}),
            services=dict(payload.get("services") or {}),
        )


def _rule(target: tuple[str, ...], source: str, **kwargs: Any) -> MappingRule:
    return MappingRule(target=target, sources=(source,), **kwargs)


def _const(target: tuple[str, ...], value: Any, when: Callable[[Mapping[str, Any]], bool] | None = None) -> MappingRule:
    return MappingRule(target=target, constant=value, when=when, reversible=False)


def _present(name: str) -> Callable[[Mapping[str, Any]], bool]:
    def check(configuration: Mapping[str, Any]) -> bool:
        value = configuration.get(name)
        if value is None:
            return False
        return len(value) > 0 if hasattr(value, "__len__") else True

    return check


def _enabled(name: str) -> Callable[[Mapping[str, Any]], bool]:
    return lambda configuration: bool(configuration.get(name))


def _equals(name: str, *values: str) -> Callable[[Mapping[str, Any]], bool]:
    return lambda configuration: configuration.get(name) in values


def _uses_backend(backend: str) -> Callable[[Mapping[str, Any]], bool]:
    def check(configuration: Mapping[str, Any]) -> bool:
        strategy = configuration.get("fileStrategy") or infer_file_strategy(configuration)
        return backend in strategy.backends()

    return check


def _social(provider: str) -> Callable[[Mapping[str, Any]], bool]:
    return lambda configuration: provider in (configuration.get("authSocialLogins") or [])


def _serper_used(configuration: Mapping[str, Any]) -> bool:
    return "serper" in (configuration.get("searchProvider"), configuration.get("searchScraper"))


# Environment rules are derived from the field table; these gate the ones that
# only matter for a particular strategy or provider.
ENV_CONDITIONS: dict[str, Callable[[Mapping[str, Any]], bool]] = {
    "redisUri": _enabled("redisEnabled"),
    "meiliHost": _enabled("meiliEnabled"),
    "meiliMasterKey": _enabled("meiliEnabled"),
    "meiliNoAnalytics": _enabled("meiliEnabled"),
    "firebaseApiKey": _uses_backend("firebase"),
    "firebaseAuthDomain": _uses_backend("firebase"),
    "firebaseProjectId": _uses_backend("firebase"),
    "firebaseStorageBucket": _uses_backend("firebase"),
    "firebaseMessagingSenderId": _uses_backend("firebase"),
    "firebaseAppId": _uses_backend("firebase"),
    "azureStorageConnectionString": _uses_backend("azure_blob"),
    "azureStoragePublicAccess": _uses_backend("azure_blob"),
    "azureContainerName": _uses_backend("azure_blob"),
    "s3AccessKeyId": _uses_backend("s3"),
    "s3SecretAccessKey": _uses_backend("s3"),
    "s3BucketName": _uses_backend("s3"),
    "s3Region": _uses_backend("s3"),
    "emailService": _equals("emailServiceType", "smtp"),
    "emailUsername": _equals("emailServiceType", "smtp"),
    "emailPassword": _equals("emailServiceType", "smtp"),
    "emailFrom": _equals("emailServiceType", "smtp", "mailgun"),
    "emailFromName": _equals("emailServiceType", "smtp", "mailgun"),
    "mailgunApiKey": _equals("emailServiceType", "mailgun"),
    "mailgunDomain": _equals("emailServiceType", "mailgun"),
    "mailgunHost": _equals("emailServiceType", "mailgun"),
    "googleClientId": _social("google"),
    "googleClientSecret": _social("google"),
    "githubClientId": _social("github"),
    "githubClientSecret": _social("github"),
    "discordClientId": _social("discord"),
    "discordClientSecret": _social("discord"),
    "openidIssuer": _social("openid"),
    "openidClientId": _social("openid"),
    "openidClientSecret": _social("openid"),
    "serperApiKey": _serper_used,
    "searxngInstanceUrl": _equals("searchProvider", "searxng"),
    "searxngApiKey": _equals("searchProvider", "searxng"),
    "firecrawlApiKey": _equals("searchScraper", "firecrawl"),
    "firecrawlApiUrl": _equals("searchScraper", "firecrawl"),
    "jinaApiKey": _equals("searchReranker", "jina"),
    "cohereApiKey": _equals("searchReranker", "cohere"),
    "ocrApiBase": _equals("ocrProvider", "custom"),
    "sttApiKey": _equals("sttProvider", "openai"),
    "ttsApiKey": _equals("ttsProvider", "openai"),
}


def _env_forward(spec: FieldSpec) -> Callable[[Any], Any]:
    if spec.kind == "boolean":
        return lambda value: None if value is None else ("true" if value else "false")
    if spec.kind in ("integer", "number"):
        return lambda value: None if value is None else str(value)
    return lambda value: value


def _env_inverse(spec: FieldSpec) -> Callable[[Any], dict[str, Any]]:
    def restore(value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        text = str(value).strip()
        if spec.kind == "boolean" and text.lower() in ("true", "false"):
            return {spec.name: text.lower() == "true"}
        if spec.kind == "integer":
            try:
                return {spec.name: int(text)}
            except ValueError:
                return {spec.name: text}
        if spec.kind == "number":
            try:
                return {spec.name: float(text)}
            except ValueError:
                return {spec.name: text}
        return {spec.name: value}

    return restore


def _environment_rules() -> tuple[MappingRule, ...]:
    return tuple(
        MappingRule(
            target=("environment", spec.env),
            sources=(spec.name,),
            forward=_env_forward(spec),
            inverse=_env_inverse(spec),
            when=ENV_CONDITIONS.get(spec.name),
        )
        for spec in FIELDS
        if spec.env
    )


def _external_link(url: str) -> dict[str, Any]:
    return {"externalUrl": url, "openNewTab": True}


def _external_link_back(name: str) -> Callable[[Any], dict[str, Any]]:
    def restore(value: Any) -> dict[str, Any]:
        if isinstance(value, Mapping) and value.get("externalUrl"):
            return {name: value["externalUrl"]}
        return {}

    return restore


def _model_specs(enabled: bool, enforce: bool, default_model: str) -> dict[str, Any]:
    return {
        "enforce": enforce,
        "prioritize": True,
        "list": [
            {
                "name": default_model,
                "label": default_model,
                "default": True,
                "preset": {"endpoint": "openAI", "model": default_model},
            }
        ],
    }


def _model_specs_back(value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        return {}
    return {"modelSpecs": True, "enforceModelSpecs": bool(value.get("enforce", False))}


def _custom_endpoints(endpoints: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted = []
    for endpoint in endpoints:
        entry: dict[str, Any] = {
            "name": endpoint["name"],
            "apiKey": endpoint["apiKey"],
            "baseURL": endpoint["baseURL"],
            "models": {"default": list(endpoint.get("models") or []), "fetch": bool(endpoint.get("fetchModels"))},
            "titleConvo": bool(endpoint.get("titleConvo", True)),
        }
        if endpoint.get("titleModel"):
            entry["titleModel"] = endpoint["titleModel"]
        if endpoint.get("modelDisplayLabel"):
            entry["modelDisplayLabel"] = endpoint["modelDisplayLabel"]
        converted.append(entry)
    return converted


def _custom_endpoints_back(value: Any) -> dict[str, Any]:
    if not isinstance(value, list):
        return {}
    endpoints = []
    for entry in value:
        if not isinstance(entry, Mapping):
            continue
        models = entry.get("models") or {}
        restored = {
            "name": entry.get("name"),
            "apiKey": entry.get("apiKey"),
            "baseURL": entry.get("baseURL"),
            "models": list(models.get("default") or []) if isinstance(models, Mapping) else [],
            "fetchModels": bool(models.get("fetch", False)) if isinstance(models, Mapping) else False,
            "titleConvo": bool(entry.get("titleConvo", True)),
        }
        for optional in ("titleModel", "modelDisplayLabel"):
            if entry.get(optional):
                restored[optional] = entry[optional]
        endpoints.append(restored)
    return {"customEndpoints": endpoints}


def _mcp_back(value: Any) -> dict[str, Any]:
    # entries that are not objects stay keyed so parsing reports them by name
    if isinstance(value, Mapping) and all(isinstance(settings, Mapping) for settings in value.values()):
        return {"mcpServers": [{"name": name, **settings} for name, settings in value.items()]}
    return {"mcpServers": value}


def _first(name: str) -> Callable[[Any], dict[str, Any]]:
    return lambda value: {name: value[0]} if isinstance(value, list) and value else {}


def _interface(key: str, source: str) -> MappingRule:
    return _rule(("document", "interface", key), source)


def _rate_limit(bucket: str, user_source: str) -> tuple[MappingRule, MappingRule]:
    # Every bucket shares the single per-IP ceiling; MESSAGE_IP_MAX is the one that reads back.
    return (
        _rule(("document", "rateLimits", bucket, "ipMax"), "rateLimitsPerIP", reversible=False),
        _rule(("document", "rateLimits", bucket, "userMax"), user_source),
    )


_stt_openai = _equals("sttProvider", "openai")
_tts_openai = _equals("ttsProvider", "openai")

DOCUMENT_RULES: tuple[MappingRule, ...] = (
    _rule(("document", "version"), "configVer"),
    _rule(("document", "cache"), "cache"),
    MappingRule(
        ("document", "fileStrategy"),
        ("fileStrategy",),
        forward=lambda strategy: strategy.to_value(),
        inverse=lambda value: {"fileStrategy": value},
    ),
    _rule(("document", "secureImageLinks"), "secureImageLinks"),
    _rule(("document", "imageOutputType"), "imageOutputType"),
    _rule(("document", "interface", "customWelcome"), "customWelcome", when=_present("customWelcome")),
    MappingRule(
        ("document", "interface", "privacyPolicy"),
        ("privacyPolicyUrl",),
        forward=_external_link,
        inverse=_external_link_back("privacyPolicyUrl"),
        when=_present("privacyPolicyUrl"),
    ),
    MappingRule(
        ("document", "interface", "termsOfService"),
        ("termsOfServiceUrl",),
        forward=_external_link,
        inverse=_external_link_back("termsOfServiceUrl"),
        when=_present("termsOfServiceUrl"),
    ),
    _interface("endpointsMenu", "addedEndpoints"),
    _interface("modelSelect", "showModelSelect"),
    _interface("parameters", "showParameters"),
    _interface("sidePanel", "showSidePanel"),
    _interface("presets", "showPresets"),
    _interface("prompts", "showPrompts"),
    _interface("bookmarks", "showBookmarks"),
    _interface("multiConvo", "showMultiConvo"),
    _interface("agents", "showAgents"),
    _interface("webSearch", "showWebSearch"),
    _interface("fileSearch", "showFileSearch"),
    _interface("fileCitations", "showFileCitations"),
    _interface("runCode", "showRunCode"),
    _interface("temporaryChatRetention", "temporaryChatsRetentionHours"),
    _rule(("document", "registration", "socialLogins"), "authSocialLogins"),
    _rule(("document", "registration", "allowedDomains"), "authAllowedDomains"),
    _rule(("document", "actions", "allowedDomains"), "actionsAllowedDomains", when=_present("actionsAllowedDomains")),
    MappingRule(
        ("document", "memory", "disabled"),
        ("memoryEnabled",),
        forward=lambda enabled: not enabled,
        inverse=lambda disabled: {"memoryEnabled": not disabled},
    ),
    _rule(("document", "memory", "personalize"), "memoryPersonalization"),
    _rule(("document", "memory", "tokenLimit"), "memoryMaxTokens"),
    _rule(("document", "memory", "messageWindowSize"), "memoryWindowSize"),
    _rule(("document", "memory", "agent", "provider"), "memoryAgent"),
    MappingRule(
        ("document", "modelSpecs"),
        ("modelSpecs", "enforceModelSpecs", "defaultModel"),
        forward=_model_specs,
        inverse=_model_specs_back,
        when=_enabled("modelSpecs"),
    ),
    _const(("document", "endpoints", "openAI", "apiKey"), "${OPENAI_API_KEY}"),
    MappingRule(
        ("document", "endpoints", "openAI", "models", "default"),
        ("defaultModel",),
        forward=lambda model: [model],
        inverse=_first("defaultModel"),
    ),
    _const(("document", "endpoints", "openAI", "models", "fetch"), True),
    _rule(("document", "endpoints", "openAI", "titleConvo"), "titleConvo"),
    _rule(("document", "endpoints", "openAI", "titleModel"), "titleModel"),
    _rule(("document", "endpoints", "agents", "recursionLimit"), "agentDefaultRecursionLimit"),
    _rule(("document", "endpoints", "agents", "maxRecursionLimit"), "agentMaxRecursionLimit"),
    _rule(("document", "endpoints", "agents", "allowedProviders"), "agentAllowedProviders"),
    _rule(("document", "endpoints", "agents", "capabilities"), "agentAllowedCapabilities"),
    _rule(("document", "endpoints", "agents", "maxCitations"), "agentCitationsTotalLimit"),
    _rule(("document", "endpoints", "agents", "maxCitationsPerFile"), "agentCitationsPerFileLimit"),
    _rule(("document", "endpoints", "agents", "minRelevanceScore"), "agentCitationsThreshold"),
    MappingRule(
        ("document", "endpoints", "custom"),
        ("customEndpoints",),
        forward=_custom_endpoints,
        inverse=_custom_endpoints_back,
        when=_present("customEndpoints"),
    ),
    _rule(("document", "fileConfig", "endpoints", "default", "fileLimit"), "filesMaxFilesPerRequest"),
    _rule(("document", "fileConfig", "endpoints", "default", "fileSizeLimit"), "filesMaxSizeMB"),
    MappingRule(
        ("document", "fileConfig", "endpoints", "default", "totalSizeLimit"),
        ("filesMaxSizeMB", "filesMaxFilesPerRequest"),
        forward=lambda size, count: size * count,
        reversible=False,
    ),
    _rule(("document", "fileConfig", "endpoints", "default", "supportedMimeTypes"), "filesAllowedMimeTypes"),
    _rule(("document", "fileConfig", "clientImageResize", "enabled"), "filesClientResizeImages"),
    *_rate_limit("fileUploads", "rateLimitsUploads"),
    *_rate_limit("conversationsImport", "rateLimitsImports"),
    *_rate_limit("stt", "rateLimitsSTT"),
    *_rate_limit("tts", "rateLimitsTTS"),
    _rule(("document", "webSearch", "searchProvider"), "searchProvider"),
    _rule(("document", "webSearch", "scraperType"), "searchScraper"),
    _rule(("document", "webSearch", "rerankerType"), "searchReranker"),
    MappingRule(
        ("document", "webSearch", "safeSearch"),
        ("searchSafeSearch",),
        forward=lambda enabled: 1 if enabled else 0,
        inverse=lambda level: {"searchSafeSearch": bool(level)},
    ),
    _rule(("document", "webSearch", "scraperTimeout"), "searchTimeout"),
    _const(("document", "webSearch", "serperApiKey"), "${SERPER_API_KEY}", when=_serper_used),
    _const(("document", "webSearch", "searxngInstanceUrl"), "${SEARXNG_INSTANCE_URL}", when=_equals("searchProvider", "searxng")),
    _const(("document", "webSearch", "searxngApiKey"), "${SEARXNG_API_KEY}", when=_equals("searchProvider", "searxng")),
    _const(("document", "webSearch", "firecrawlApiKey"), "${FIRECRAWL_API_KEY}", when=_equals("searchScraper", "firecrawl")),
    _const(("document", "webSearch", "firecrawlApiUrl"), "${FIRECRAWL_API_URL}", when=_equals("searchScraper", "firecrawl")),
    _const(("document", "webSearch", "jinaApiKey"), "${JINA_API_KEY}", when=_equals("searchReranker", "jina")),
    _const(("document", "webSearch", "cohereApiKey"), "${COHERE_API_KEY}", when=_equals("searchReranker", "cohere")),
    MappingRule(
        ("document", "ocr", "strategy"),
        ("ocrProvider",),
        forward=lambda provider: OCR_STRATEGIES[provider],
        inverse=lambda strategy: {
            "ocrProvider": next((key for key, value in OCR_STRATEGIES.items() if value == strategy), "mistral")
        },
    ),
    _rule(("document", "ocr", "mistralModel"), "ocrModel"),
    _const(("document", "ocr", "apiKey"), "${OCR_API_KEY}"),
    _const(("document", "ocr", "baseURL"), "${OCR_BASEURL}", when=_equals("ocrProvider", "custom")),
    _const(("document", "speech", "stt", "openai", "apiKey"), "${STT_API_KEY}", when=_stt_openai),
    MappingRule(
        ("document", "speech", "stt", "openai", "model"),
        ("sttProvider", "sttModel"),
        forward=lambda provider, model: model,
        inverse=lambda model: {"sttProvider": "openai", "sttModel": model},
        when=_stt_openai,
    ),
    _const(("document", "speech", "tts", "openai", "apiKey"), "${TTS_API_KEY}", when=_tts_openai),
    MappingRule(
        ("document", "speech", "tts", "openai", "model"),
        ("ttsProvider", "ttsModel"),
        forward=lambda provider, model: model,
        inverse=lambda model: {"ttsProvider": "openai", "ttsModel": model},
        when=_tts_openai,
    ),
    MappingRule(
        ("document", "speech", "tts", "openai", "voices"),
        ("ttsVoice",),
        forward=lambda voice: [voice],
        inverse=_first("ttsVoice"),
        when=_tts_openai,
    ),
    MappingRule(
        ("document", "mcpServers"),
        ("mcpServers",),
        forward=lambda servers: servers.to_mapping(),
        inverse=_mcp_back,
        when=_present("mcpServers"),
    ),
)

SERVICE_RULES: tuple[MappingRule, ...] = (
    _rule(("services", "port"), "port", reversible=False),
    _rule(("services", "image"), "appImage"),
    _rule(("services", "uploadsPath"), "fileUploadPath", when=_uses_backend("local")),
    _rule(("services", "emailService"), "emailServiceType"),
    _rule(("services", "redis"), "redisEnabled", reversible=False),
    _rule(("services", "searchIndex"), "meiliEnabled", reversible=False),
    MappingRule(("services", "externalMongo"), ("mongoUri",), forward=lambda uri: bool(uri), reversible=False),
    _rule(("services", "features", "conversations"), "enableConversations"),
    _rule(("services", "features", "streaming"), "streaming"),
    _rule(("services", "features", "loginOrder"), "authLoginOrder"),
)

MAPPING_RULES: tuple[MappingRule, ...] = (*_environment_rules(), *DOCUMENT_RULES, *SERVICE_RULES)


def assert_mapping_coverage(rules: tuple[MappingRule, ...] = MAPPING_RULES) -> None:
    """Fail when a field has no mapping rule or a destination is claimed twice."""
    covered = {source for rule in rules for source in rule.sources}
    unknown = sorted(covered - set(FIELDS_BY_NAME))
    if unknown:
        raise MappingCoverageError(f"Mapping rules reference unknown fields: {', '.join(unknown)}")
    missing = [spec.name for spec in FIELDS if spec.name not in covered]
    if missing:
        raise MappingCoverageError(f"Fields without a mapping rule: {', '.join(missing)}")

    targets: set[tuple[str, ...]] = set()
    for rule in rules:
        if rule.target[0] not in ("document", "environment", "services"):
            raise MappingCoverageError(f"Unknown mapping section: {'.'.join(rule.target)}")
        if rule.target in targets:
            raise MappingCoverageError(f"Destination mapped twice: {'.'.join(rule.target)}")
        targets.add(rule.target)


assert_mapping_coverage()


def _assign(tree: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    node = tree
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


def _lookup(tree: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    node: Any = tree
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return _MISSING
        node = node[key]
    return node


def _canonical(configuration: Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(configuration.get("mcpServers"), McpServers) and configuration.get("fileStrategy") is not None:
        return configuration
    return parse_configuration(configuration).configuration


def to_nested(configuration: Mapping[str, Any]) -> NestedConfiguration:
    """Map a flat configuration onto the generation-facing nested shape."""
    flat = _canonical(configuration)
    sections: dict[str, dict[str, Any]] = {"document": {}, "environment": {}, "services": {}}
    for rule in MAPPING_RULES:
        if not rule.applies(flat):
            continue
        _assign(sections[rule.target[0]], rule.target[1:], rule.value(flat))
    return NestedConfiguration(**sections)


def to_flat(nested: NestedConfiguration | Mapping[str, Any]) -> dict[str, Any]:
    """Recover the flat fields a nested configuration carries.

    The first reversible rule that finds its destination wins; derived copies
    are skipped. Fields that were never present stay absent so that parsing
    applies defaults or strategy inference to them.
    """
    if not isinstance(nested, NestedConfiguration):
        nested = NestedConfiguration.from_dict(nested)
    sections = nested.to_dict()
    flat: dict[str, Any] = {}
    for rule in MAPPING_RULES:
        if not rule.reversible or not rule.sources:
            continue
        value = _lookup(sections[rule.target[0]], rule.target[1:])
        if value is _MISSING:
            continue
        for key, restored in rule.restore(value).items():
            flat.setdefault(key, restored)
    return flat


def infer_strategies(flat: Mapping[str, Any]) -> dict[str, Any]:
    """The implicit discriminators a partial flat configuration resolves to."""
    return {
        "fileStrategy": infer_file_strategy(flat).to_value(),
        "emailServiceType": infer_email_service(flat),
        "meiliEnabled": infer_search_index(flat),
    }
