from __future__ import annotations

import re
from typing import Any

PLACEHOLDER_PATTERN = re.compile(r"^\{\{[A-Z][A-Z0-9_]*\}\}$")
REDACTED = "[REDACTED]"
SENSITIVE_KEY_MARKERS = (
    "authorization",
    "accesstoken",
    "apitoken",
    "authtoken",
    "apikey",
    "api_key",
    "secret",
    "password",
    "jwt",
    "credskey",
    "credsiv",
    "connectionstring",
    "masterkey",
)


def placeholder(env_name: str) -> str:
    return "{{" + env_name + "}}"


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and bool(PLACEHOLDER_PATTERN.match(value.strip()))


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower().replace("-", "").replace("_", "")
    return any(marker.replace("_", "") in lowered for marker in SENSITIVE_KEY_MARKERS)


def deep_redact(value: Any) -> Any:
    """Copy of ``value`` with every sensitive-looking key masked, for logging."""
    if isinstance(value, dict):
        return {
            key: REDACTED if is_sensitive_key(str(key)) and value[key] not in (None, "") else deep_redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [deep_redact(item) for item in value]
    return value


def env_token(*parts: str) -> str:
    """``MCP_my-server_Authorization`` style parts joined into ``MCP_MY_SERVER_AUTHORIZATION``."""
    joined = "_".join(parts)
    return re.sub(r"[^A-Z0-9]+", "_", joined.upper()).strip("_")


ENV_REFERENCE_PATTERN = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


def is_env_reference(value: Any) -> bool:
    return isinstance(value, str) and bool(ENV_REFERENCE_PATTERN.match(value.strip()))


def custom_endpoint_env_name(endpoint_name: str) -> str:
    return env_token("CUSTOM", endpoint_name, "API_KEY")


def mcp_env_name(server: str, key: str) -> str:
    return env_token("MCP", server, key)


def is_routed_api_key(api_key: Any) -> bool:
    """Custom endpoint keys that are literal values and so move into ``.env``."""
    return isinstance(api_key, str) and bool(api_key) and api_key != "user_provided" and not is_env_reference(api_key)


def is_routed_mcp_value(key: str, value: Any) -> bool:
    """MCP header/env entries holding a literal credential."""
    return isinstance(value, str) and bool(value) and not is_env_reference(value) and is_sensitive_key(key)
