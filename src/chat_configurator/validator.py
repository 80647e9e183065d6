from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .rules_engine import RuleEngine
from .schema import CATEGORIES, FIELDS_BY_NAME, fields_in_category, parse_configuration

logger = logging.getLogger(__name__)


def _oauth_rule(provider: str, label: str, *fields: str) -> dict[str, Any]:
    credentials = " and ".join(f"present({name})" for name in fields)
    return {
        "reason_code": f"WARN_{provider.upper()}_OAUTH_CREDENTIALS",
        "category": "Authentication",
        "field": fields[0],
        "expression": f"'{provider}' not in authSocialLogins or ({credentials})",
        "message": f"{label} login is enabled but its OAuth credentials are missing",
        "recommended_severity": "WARN",
    }


def _storage_rule(backend: str, label: str, *fields: str) -> dict[str, Any]:
    credentials = " and ".join(f"present({name})" for name in fields)
    return {
        "reason_code": f"WARN_{backend.upper()}_CREDENTIALS",
        "category": "Files",
        "field": fields[0],
        "expression": f"'{backend}' not in fileBackends or ({credentials})",
        "message": f"{label} storage is selected but its credentials are incomplete",
        "recommended_severity": "WARN",
    }


BUSINESS_RULES: tuple[dict[str, Any], ...] = (
    {
        "reason_code": "ERR_RECURSION_LIMIT_ORDER",
        "category": "Agents",
        "field": "agentDefaultRecursionLimit",
        "expression": "agentDefaultRecursionLimit <= agentMaxRecursionLimit",
        "message": "Default recursion limit cannot exceed the maximum recursion limit",
    },
    {
        "reason_code": "ERR_CITATION_LIMIT_ORDER",
        "category": "Agents",
        "field": "agentCitationsPerFileLimit",
        "expression": "agentCitationsPerFileLimit <= agentCitationsTotalLimit",
        "message": "Citations per file cannot exceed the total citation limit",
    },
    {
        "reason_code": "ERR_OPENAI_KEY_FORMAT",
        "category": "Endpoints",
        "field": "openaiApiKey",
        "expression": "not present(openaiApiKey) or startswith(openaiApiKey, 'sk-')",
        "message": "OpenAI API Key must start with 'sk-'",
    },
    {
        "reason_code": "ERR_STT_API_KEY",
        "category": "Endpoints",
        "field": "sttApiKey",
        "expression": "sttProvider == 'none' or present(sttApiKey) or present(openaiApiKey)",
        "message": "Speech-to-text needs an API key",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "ERR_TTS_API_KEY",
        "category": "Endpoints",
        "field": "ttsApiKey",
        "expression": "ttsProvider == 'none' or present(ttsApiKey) or present(openaiApiKey)",
        "message": "Text-to-speech needs an API key",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "ERR_MODEL_SPECS_ENFORCED_WITHOUT_SPECS",
        "category": "Models/Specs",
        "field": "enforceModelSpecs",
        "expression": "not enforceModelSpecs or modelSpecs",
        "message": "Model specs must be enabled before they can be enforced",
    },
    {
        "reason_code": "ERR_MEMORY_AGENT_REQUIRED",
        "category": "Memory",
        "field": "memoryAgent",
        "expression": "not memoryEnabled or present(memoryAgent)",
        "message": "Memory requires an agent provider",
    },
    {
        "reason_code": "WARN_PERSONALIZATION_WITHOUT_MEMORY",
        "category": "Memory",
        "field": "memoryPersonalization",
        "expression": "not memoryPersonalization or memoryEnabled",
        "message": "Personalization has no effect while memory is disabled",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "WARN_MEMORY_WINDOW_EXCEEDS_TOKENS",
        "category": "Memory",
        "field": "memoryWindowSize",
        "expression": "not memoryEnabled or memoryWindowSize <= memoryMaxTokens",
        "message": "Memory message window is larger than the memory token limit",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "ERR_CUSTOM_OCR_BASE_URL",
        "category": "OCR",
        "field": "ocrApiBase",
        "expression": "ocrProvider != 'custom' or present(ocrApiBase)",
        "message": "Custom OCR requires an API base URL",
    },
    {
        "reason_code": "WARN_OCR_API_KEY",
        "category": "OCR",
        "field": "ocrApiKey",
        "expression": "present(ocrApiKey)",
        "message": "OCR API key is not set; document OCR will be unavailable",
        "recommended_severity": "WARN",
    },
    _storage_rule("s3", "Amazon S3", "s3AccessKeyId", "s3SecretAccessKey", "s3BucketName", "s3Region"),
    _storage_rule("azure_blob", "Azure Blob", "azureStorageConnectionString", "azureContainerName"),
    _storage_rule(
        "firebase",
        "Firebase",
        "firebaseApiKey",
        "firebaseAuthDomain",
        "firebaseProjectId",
        "firebaseStorageBucket",
    ),
    {
        "reason_code": "WARN_SERPER_API_KEY",
        "category": "Search",
        "field": "serperApiKey",
        "expression": "'serper' not in (searchProvider, searchScraper) or present(serperApiKey)",
        "message": "Serper is selected but SERPER_API_KEY is not set",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "ERR_SEARXNG_INSTANCE_URL",
        "category": "Search",
        "field": "searxngInstanceUrl",
        "expression": "searchProvider != 'searxng' or present(searxngInstanceUrl)",
        "message": "SearXNG requires an instance URL",
    },
    {
        "reason_code": "WARN_FIRECRAWL_API_KEY",
        "category": "Search",
        "field": "firecrawlApiKey",
        "expression": "searchScraper != 'firecrawl' or present(firecrawlApiKey)",
        "message": "Firecrawl is selected but FIRECRAWL_API_KEY is not set",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "WARN_RERANKER_API_KEY",
        "category": "Search",
        "field": "searchReranker",
        "expression": "(searchReranker == 'jina' and present(jinaApiKey)) or (searchReranker == 'cohere' and present(cohereApiKey))",
        "message": "The selected reranker has no API key",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "WARN_SMTP_CREDENTIALS",
        "category": "Authentication",
        "field": "emailService",
        "expression": "emailServiceType != 'smtp' or (present(emailService) and present(emailUsername) and present(emailPassword))",
        "message": "SMTP email is selected but its service, username or password is missing",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "WARN_MAILGUN_CREDENTIALS",
        "category": "Authentication",
        "field": "mailgunApiKey",
        "expression": "emailServiceType != 'mailgun' or (present(mailgunApiKey) and present(mailgunDomain))",
        "message": "Mailgun email is selected but its API key or domain is missing",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "ERR_NO_LOGIN_METHOD",
        "category": "Authentication",
        "field": "allowEmailLogin",
        "expression": "allowEmailLogin or (allowSocialLogin and len(authSocialLogins) > 0)",
        "message": "At least one login method must be enabled",
    },
    {
        "reason_code": "WARN_SOCIAL_LOGIN_WITHOUT_PROVIDERS",
        "category": "Authentication",
        "field": "authSocialLogins",
        "expression": "not allowSocialLogin or len(authSocialLogins) > 0",
        "message": "Social login is enabled but no providers are selected",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "ERR_REFRESH_SHORTER_THAN_SESSION",
        "category": "Authentication",
        "field": "refreshTokenExpiry",
        "expression": "refreshTokenExpiry >= sessionExpiry",
        "message": "Refresh token expiry must not be shorter than the session expiry",
    },
    _oauth_rule("google", "Google", "googleClientId", "googleClientSecret"),
    _oauth_rule("github", "GitHub", "githubClientId", "githubClientSecret"),
    _oauth_rule("discord", "Discord", "discordClientId", "discordClientSecret"),
    _oauth_rule("openid", "OpenID", "openidClientId", "openidClientSecret", "openidIssuer"),
    {
        "reason_code": "WARN_MEILI_MASTER_KEY",
        "category": "Database",
        "field": "meiliMasterKey",
        "expression": "not meiliEnabled or present(meiliMasterKey)",
        "message": "MeiliSearch is enabled but MEILI_MASTER_KEY is not set",
        "recommended_severity": "WARN",
    },
    {
        "reason_code": "WARN_DEFAULT_MONGO_PASSWORD",
        "category": "Database",
        "field": "mongoRootPassword",
        "expression": "present(mongoUri) or mongoRootPassword != 'password123'",
        "message": "The bundled MongoDB still uses the default root password",
        "recommended_severity": "WARN",
    },
)


@dataclass(slots=True)
class ValidationStatus:
    category: str
    status: str
    settings_valid: int
    settings_total: int
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "status": self.status,
            "settingsValid": self.settings_valid,
            "settingsTotal": self.settings_total,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


_ENGINE = RuleEngine.from_rules(BUSINESS_RULES)


def rule_context(configuration: Mapping[str, Any]) -> dict[str, Any]:
    context = dict(configuration)
    strategy = configuration.get("fileStrategy")
    context["fileBackends"] = list(strategy.backends()) if strategy is not None else ["local"]
    return context


def _field_category(name: str, fallback: str) -> str:
    spec = FIELDS_BY_NAME.get(name)
    return spec.category if spec is not None else fallback


def validate_configuration(data: Any, strict: bool = True) -> list[ValidationStatus]:
    """Per-category report for ``data``; never raises on malformed input.

    Schema errors and ``BLOCK`` rule violations make a category ``invalid``.
    ``WARN`` violations alone leave it ``pending``.
    """
    parsed = parse_configuration(data, strict=strict)
    blocking: dict[str, list[tuple[str, str]]] = {category: [] for category in CATEGORIES}
    warnings: dict[str, list[str]] = {category: [] for category in CATEGORIES}

    for error in parsed.errors:
        blocking[error.category].append((error.field, str(error)))

    result = _ENGINE.evaluate(rule_context(parsed.configuration))
    for violation in result.violations:
        category = violation.category or _field_category(violation.field, "Server")
        message = f"{violation.field}: {violation.message}" if violation.field else violation.message
        if violation.recommended_severity == "BLOCK":
            blocking[category].append((violation.field, message))
        else:
            warnings[category].append(message)

    report: list[ValidationStatus] = []
    for category in CATEGORIES:
        total = len(fields_in_category(category))
        failing_fields = {name for name, _ in blocking[category] if name in FIELDS_BY_NAME}
        if blocking[category]:
            status = "invalid"
        elif warnings[category]:
            status = "pending"
        else:
            status = "valid"
        report.append(
            ValidationStatus(
                category=category,
                status=status,
                settings_valid=max(total - len(failing_fields), 0),
                settings_total=total,
                errors=[message for _, message in blocking[category]],
                warnings=list(warnings[category]),
            )
        )

    invalid = [status.category for status in report if status.status == "invalid"]
    logger.debug("configuration_validated", extra={"invalid_categories": invalid})
    return report


def is_valid(report: list[ValidationStatus]) -> bool:
    return all(status.status != "invalid" for status in report)
