import pytest

from chat_configurator.schema import (
    CACHING_PRESETS,
    CATEGORIES,
    FIELDS,
    SECRET_FIELDS,
    apply_caching_preset,
    caching_preset,
    configuration_to_json,
    default_configuration,
    parse_configuration,
    schema_document,
)
from chat_configurator.variants import (
    McpServers,
    PerAssetStorageStrategy,
    SingleStorageStrategy,
    infer_email_service,
    infer_file_strategy,
    infer_search_index,
    parse_file_strategy,
    parse_mcp_servers,
)


def test_default_configuration_is_valid_without_secrets() -> None:
    result = parse_configuration({})
    assert result.valid
    config = result.configuration
    assert config["port"] == 3080
    assert config["host"] == "0.0.0.0"
    assert config["fileStrategy"] == SingleStorageStrategy("local")
    assert config["emailServiceType"] == "none"
    assert config["meiliEnabled"] is False
    assert isinstance(config["mcpServers"], McpServers)
    assert all(config[name] is None for name in SECRET_FIELDS if name != "mongoRootPassword")


def test_strict_parse_requires_core_secrets() -> None:
    result = parse_configuration({}, strict=True)
    failing = {error.path for error in result.errors}
    assert failing == {"jwtSecret", "jwtRefreshSecret", "credsKey", "credsIV"}
    assert all(error.category == "Security" for error in result.errors)


@pytest.mark.parametrize("port", [1, 65535, "8080"])
def test_port_accepts_values_in_range(port) -> None:
    result = parse_configuration({"port": port})
    assert result.valid
    assert result.configuration["port"] == int(port)


@pytest.mark.parametrize("port", [0, 65536, "http", 80.5, True])
def test_port_rejects_out_of_range_or_wrong_type(port) -> None:
    result = parse_configuration({"port": port})
    assert not result.valid
    assert result.errors[0].path == "port"
    assert result.configuration["port"] == 3080


def test_out_of_range_message_names_bounds() -> None:
    result = parse_configuration({"memoryWindowSize": 999})
    assert str(result.errors[0]) == "memoryWindowSize: must be between 1000 and 100000"


def test_secret_lengths_are_checked_when_present() -> None:
    result = parse_configuration({"credsKey": "short", "credsIV": "a" * 16, "jwtSecret": "x" * 31})
    messages = {str(error) for error in result.errors}
    assert "credsKey: must be exactly 32 characters" in messages
    assert "jwtSecret: must be at least 32 characters" in messages
    assert not any(error.path == "credsIV" for error in result.errors)


def test_placeholder_secret_is_treated_as_unset() -> None:
    result = parse_configuration({"openaiApiKey": "{{OPENAI_API_KEY}}", "jwtSecret": "{{JWT_SECRET}}"})
    assert result.valid
    assert result.configuration["openaiApiKey"] is None
    assert result.configuration["jwtSecret"] is None


def test_string_forms_are_coerced() -> None:
    result = parse_configuration(
        {
            "noIndex": "false",
            "debugLogging": "TRUE",
            "imageOutputType": "PNG",
            "authAllowedDomains": "example.com, example.org",
            "agentCitationsThreshold": "0.25",
        }
    )
    assert result.valid
    config = result.configuration
    assert config["noIndex"] is False
    assert config["debugLogging"] is True
    assert config["imageOutputType"] == "png"
    assert config["authAllowedDomains"] == ["example.com", "example.org"]
    assert config["agentCitationsThreshold"] == 0.25


def test_invalid_choice_and_non_object_input() -> None:
    result = parse_configuration({"searchProvider": "bing"})
    assert str(result.errors[0]) == "searchProvider: must be one of serper, searxng"

    result = parse_configuration(["not", "a", "mapping"])
    assert [error.path for error in result.errors] == ["configuration"]


def test_required_text_cannot_be_blank() -> None:
    result = parse_configuration({"defaultModel": "   "})
    assert str(result.errors[0]) == "defaultModel: is required"
    assert result.configuration["defaultModel"] == "gpt-4"


def test_custom_endpoints_are_normalized() -> None:
    result = parse_configuration(
        {
            "customEndpoints": [
                {"name": "groq", "baseURL": "https://api.groq.com/openai/v1", "models": "llama3, mixtral"},
                {"name": "groq", "baseURL": "https://other"},
                {"name": "missing-url"},
            ]
        }
    )
    endpoints = result.configuration["customEndpoints"]
    assert endpoints == [
        {
            "name": "groq",
            "apiKey": "user_provided",
            "baseURL": "https://api.groq.com/openai/v1",
            "models": ["llama3", "mixtral"],
            "fetchModels": False,
            "titleConvo": True,
        }
    ]
    assert [error.path for error in result.errors] == ["customEndpoints[1].name", "customEndpoints[2].baseURL"]


def test_file_strategy_accepts_single_backend_and_aliases() -> None:
    strategy, errors = parse_file_strategy("AWS")
    assert errors == []
    assert strategy == SingleStorageStrategy("s3")
    assert strategy.to_value() == "s3"


def test_file_strategy_per_asset_mapping() -> None:
    strategy, errors = parse_file_strategy({"avatar": "s3", "document": "azure"})
    assert errors == []
    assert isinstance(strategy, PerAssetStorageStrategy)
    assert strategy.backend_for("avatar") == "s3"
    assert strategy.backend_for("image") == "local"
    assert strategy.backends() == ("local", "s3", "azure_blob")
    assert strategy.to_value() == {"default": "local", "avatar": "s3", "document": "azure_blob"}


def test_file_strategy_rejects_unknown_asset_and_backend() -> None:
    strategy, errors = parse_file_strategy({"video": "s3", "image": "dropbox"})
    assert strategy is None
    assert [error.path for error in errors] == ["fileStrategy.video", "fileStrategy.image"]

    result = parse_configuration({"fileStrategy": 42})
    assert result.errors[0].category == "Files"


def test_file_strategy_is_inferred_from_credentials() -> None:
    assert infer_file_strategy({}) == SingleStorageStrategy("local")
    assert infer_file_strategy({"s3BucketName": "uploads"}) == SingleStorageStrategy("s3")
    assert infer_file_strategy({"azureStorageConnectionString": "x", "s3BucketName": "y"}) == SingleStorageStrategy(
        "azure_blob"
    )
    assert infer_file_strategy({"fileStrategy": "firebase", "s3BucketName": "y"}) == SingleStorageStrategy("firebase")
    assert parse_configuration({"firebaseApiKey": "key"}).configuration["fileStrategy"] == SingleStorageStrategy(
        "firebase"
    )


def test_email_service_and_search_index_inference() -> None:
    assert infer_email_service({}) == "none"
    assert infer_email_service({"mailgunDomain": "mg.example.com"}) == "mailgun"
    assert infer_email_service({"emailUsername": "bot"}) == "smtp"
    assert infer_email_service({"emailServiceType": "none", "emailUsername": "bot"}) == "none"
    assert infer_search_index({"meiliMasterKey": "key"}) is True
    assert infer_search_index({"meiliMasterKey": "key", "meiliEnabled": False}) is False


def test_mcp_servers_accept_list_and_mapping_forms() -> None:
    as_list, errors = parse_mcp_servers(
        [{"name": "github", "url": "https://api.github.com/mcp", "headers": {"Authorization": "Bearer t"}}]
    )
    assert errors == []
    as_mapping, errors = parse_mcp_servers(
        {"github": {"url": "https://api.github.com/mcp", "headers": {"Authorization": "Bearer t"}}}
    )
    assert errors == []
    assert as_list == as_mapping
    assert as_list.to_mapping() == {
        "github": {
            "type": "streamable-http",
            "url": "https://api.github.com/mcp",
            "timeout": 30000,
            "headers": {"Authorization": "Bearer t"},
            "chatMenu": True,
        }
    }


def test_mcp_stdio_server_inferred_from_command() -> None:
    servers, errors = parse_mcp_servers({"files": {"command": "npx", "args": ["-y", "@mcp/filesystem"]}})
    assert errors == []
    server = next(iter(servers))
    assert server.type == "stdio"
    assert not server.is_remote
    assert server.to_entry()["args"] == ["-y", "@mcp/filesystem"]


def test_mcp_server_errors_are_reported_per_entry() -> None:
    servers, errors = parse_mcp_servers(
        {
            "broken": {"type": "stdio"},
            "remote": {"type": "sse"},
            "slow": {"url": "https://x", "timeout": 10},
            "ok": {"url": "https://ok"},
        }
    )
    assert servers.names() == ["ok"]
    assert [error.path for error in errors] == ["mcpServers.broken.command", "mcpServers.remote.url", "mcpServers.slow.timeout"]

    result = parse_configuration({"mcpServers": {"broken": {"type": "carrier-pigeon"}}})
    assert result.errors[0].category == "MCP"


def test_configuration_to_json_emits_plain_values() -> None:
    payload = configuration_to_json(
        parse_configuration({"fileStrategy": {"image": "s3"}, "mcpServers": {"ok": {"url": "https://ok"}}}).configuration
    )
    assert list(payload) == [spec.name for spec in FIELDS]
    assert payload["fileStrategy"] == {"default": "local", "image": "s3"}
    assert payload["mcpServers"][0]["name"] == "ok"


def test_default_configuration_is_stable() -> None:
    assert configuration_to_json(default_configuration()) == configuration_to_json(default_configuration())


def test_schema_document_describes_every_field() -> None:
    document = schema_document()
    assert document["categories"] == list(CATEGORIES)
    by_name = {field["name"]: field for field in document["fields"]}
    assert len(by_name) == len(FIELDS)
    assert by_name["port"]["minimum"] == 1
    assert by_name["credsKey"]["length"] == 32
    assert by_name["credsKey"]["secret"] is True
    assert by_name["fileStrategy"]["inferred"] is True
    assert by_name["openaiApiKey"]["env"] == "OPENAI_API_KEY"
    assert by_name["configVer"]["pattern"].startswith("^")
    assert document["cachingPresets"]["balanced"]["staticCacheMaxAge"] == 604_800


@pytest.mark.parametrize("value", ["1.2.8", "1.3.0-rc.1", " 2.0.0 "])
def test_config_version_accepts_release_numbers(value) -> None:
    result = parse_configuration({"configVer": value})
    assert result.valid
    assert result.configuration["configVer"] == value.strip()


@pytest.mark.parametrize("value", ["1.2.8\nmcpServers: {}", "latest", "1.2", "1.2.8 # note"])
def test_config_version_rejects_free_text(value) -> None:
    result = parse_configuration({"configVer": value})
    assert [(error.path, error.message) for error in result.errors] == [
        ("configVer", "does not match the expected format")
    ]
    assert result.configuration["configVer"] == "1.2.8"


def test_mcp_list_entry_without_name_is_rejected() -> None:
    servers, errors = parse_mcp_servers([{"name": "ok", "url": "https://ok"}, {"url": "https://anonymous"}])
    assert servers.names() == ["ok"]
    assert [(error.path, error.message) for error in errors] == [("mcpServers[1].name", "is required")]


def test_default_caching_is_balanced_preset() -> None:
    configuration = default_configuration()
    for key, value in CACHING_PRESETS["balanced"].items():
        assert configuration[key] == value
    assert caching_preset(configuration) == "balanced"
    assert caching_preset({}) == "balanced"


@pytest.mark.parametrize("preset", sorted(CACHING_PRESETS))
def test_caching_presets_apply_and_are_detected(preset) -> None:
    configuration = apply_caching_preset({"appTitle": "Team"}, preset)
    assert configuration["appTitle"] == "Team"
    result = parse_configuration(configuration)
    assert result.valid
    assert caching_preset(result.configuration) == preset


def test_caching_preset_custom_and_unknown() -> None:
    assert caching_preset({"staticCacheMaxAge": 42}) == "custom"
    with pytest.raises(ValueError, match="Unknown caching preset"):
        apply_caching_preset({}, "aggressive")
    result = parse_configuration({"staticCacheMaxAge": 31_536_001})
    assert [error.path for error in result.errors] == ["staticCacheMaxAge"]


def test_routed_secret_names_must_not_collide() -> None:
    result = parse_configuration(
        {
            "mcpServers": [
                {"name": "my-server", "url": "https://a", "headers": {"Authorization": "Bearer a"}},
                {"name": "my_server", "url": "https://b", "headers": {"Authorization": "Bearer b"}},
            ]
        }
    )
    assert [(error.path, error.message) for error in result.errors] == [
        (
            "mcpServers[1].headers.Authorization",
            "environment variable MCP_MY_SERVER_AUTHORIZATION is already used by mcpServers[0].headers.Authorization",
        )
    ]

    endpoints = parse_configuration(
        {
            "customEndpoints": [
                {"name": "My API", "baseURL": "https://a", "apiKey": "k1"},
                {"name": "my-api", "baseURL": "https://b", "apiKey": "k2"},
            ]
        }
    )
    assert [error.path for error in endpoints.errors] == ["customEndpoints[1].name"]
    assert "CUSTOM_MY_API_API_KEY" in endpoints.errors[0].message


def test_routed_secret_names_skip_user_provided_and_references() -> None:
    result = parse_configuration(
        {
            "customEndpoints": [
                {"name": "groq", "baseURL": "https://a", "apiKey": "user_provided"},
                {"name": "Groq", "baseURL": "https://b", "apiKey": "${GROQ_KEY}"},
            ]
        }
    )
    assert result.valid


def test_custom_endpoint_named_like_builtin_provider_is_allowed() -> None:
    result = parse_configuration(
        {
            "anthropicApiKey": "sk-ant",
            "customEndpoints": [{"name": "anthropic", "baseURL": "https://proxy.example.com", "apiKey": "sk-proxy"}],
        }
    )
    assert result.valid
