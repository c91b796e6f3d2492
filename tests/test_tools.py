from pathlib import Path

from apim_lifecycle.dependencies import DependencyOrchestrator
from apim_lifecycle.gateway.memory import InMemoryGateway
from apim_lifecycle.lifecycle import ResourceLifecycleManager
from apim_lifecycle.locks import KeyedLocks
from apim_lifecycle.tools import ToolDispatcher
from apim_lifecycle.versioning import VersionStrategyResolver

FIXTURES = Path(__file__).parent / "fixtures"

WEATHER = (FIXTURES / "weather.yaml").read_text(encoding="utf-8")
USERS_PROTO = (FIXTURES / "user_service.proto").read_text(encoding="utf-8")


def _dispatcher() -> tuple[ToolDispatcher, InMemoryGateway]:
    gateway = InMemoryGateway()
    resolver = VersionStrategyResolver()
    locks = KeyedLocks()
    manager = ResourceLifecycleManager(gateway, resolver, locks, timeout=5.0)
    orchestrator = DependencyOrchestrator(gateway, locks, timeout=5.0)
    return ToolDispatcher(manager, orchestrator, resolver), gateway


def _import_weather(dispatcher: ToolDispatcher, **extra):
    return dispatcher.call(
        "create_api_from_yaml",
        {"apiId": "weather", "displayName": "Weather", "yamlContract": WEATHER, **extra},
    )


class TestToolDispatcher:
    def test_tool_names(self):
        dispatcher, _ = _dispatcher()
        assert len(dispatcher.tool_names) == 18
        assert "create_api_from_yaml" in dispatcher.tool_names

    def test_unknown_tool(self):
        dispatcher, _ = _dispatcher()
        result = dispatcher.call("delete_everything", {})
        assert result.ok is False
        assert result.error["code"] == "VALIDATION_ERROR"
        assert result.error["field"] == "name"

    def test_missing_required_argument_names_field(self):
        dispatcher, _ = _dispatcher()
        result = dispatcher.call("create_api_from_yaml", {"apiId": "weather", "displayName": "Weather"})
        assert result.ok is False
        assert result.error["field"] == "yamlContract"

    def test_wrong_enum_value(self):
        dispatcher, _ = _dispatcher()
        result = dispatcher.call("create_product", {"productId": "p", "displayName": "P", "state": "archived"})
        assert result.error["field"] == "state"


class TestImportTools:
    def test_create_api_from_yaml_with_segment_version(self):
        dispatcher, gateway = _dispatcher()
        result = _import_weather(dispatcher, initialVersion="v1")

        assert result.ok is True
        assert result.payload["operationCount"] == 1
        assert result.payload["api"]["path"] == "weather/v1"
        assert result.payload["api"]["versionSetId"] == "weather-version-set"
        assert result.payload["backend"] == "weather-backend"
        assert gateway.list_backends(timeout=1)[0].url == "https://api.weather.example.com/weather"

    def test_create_api_from_yaml_with_query_version(self):
        dispatcher, _ = _dispatcher()
        result = _import_weather(
            dispatcher, initialVersion="v1.0", versioningScheme="Query", versionQueryName="api-version"
        )
        assert result.ok is True
        assert result.payload["api"]["path"] == "weather"
        assert "api-version=v1.0" in result.payload["message"]

    def test_reimport_reports_same_operation_count(self):
        dispatcher, _ = _dispatcher()
        first = _import_weather(dispatcher, initialVersion="v1")
        second = _import_weather(dispatcher, initialVersion="v1")
        assert first.payload["operationCount"] == second.payload["operationCount"] == 1
        assert second.payload["api"]["path"] == "weather/v1"

    def test_parse_error_is_reported(self):
        dispatcher, gateway = _dispatcher()
        result = dispatcher.call(
            "create_api_from_yaml",
            {"apiId": "broken", "displayName": "Broken", "yamlContract": "openapi: 3.0.0\ninfo: {title: B}\n"},
        )
        assert result.ok is False
        assert result.error["code"] == "PARSE_ERROR"
        assert result.error["field"] == "paths"
        assert gateway.list_apis(timeout=1) == []

    def test_malformed_info_is_reported(self):
        dispatcher, gateway = _dispatcher()
        result = dispatcher.call(
            "create_api_from_yaml",
            {"apiId": "broken", "displayName": "Broken", "yamlContract": "openapi: 3.0.0\ninfo: x\npaths: {}\n"},
        )
        assert result.ok is False
        assert result.error["code"] == "PARSE_ERROR"
        assert result.error["field"] == "info"
        assert gateway.list_apis(timeout=1) == []

    def test_reserved_query_name_is_rejected(self):
        dispatcher, _ = _dispatcher()
        result = _import_weather(
            dispatcher, initialVersion="v1", versioningScheme="Query", versionQueryName="subscription-key"
        )
        assert result.error["code"] == "VALIDATION_ERROR"
        assert result.error["field"] == "versionQueryName"

    def test_grpc_import_twice(self):
        dispatcher, gateway = _dispatcher()
        args = {"apiId": "users", "displayName": "Users", "protoDefinition": USERS_PROTO}
        dispatcher.call("create_grpc_api_from_proto", args)
        result = dispatcher.call("create_grpc_api_from_proto", args)

        assert result.ok is True
        assert result.payload["operationCount"] == 2
        assert result.payload["api"]["apiType"] == "grpc"
        assert result.payload["backend"] is None
        assert len(gateway.list_operations("users", timeout=1)) == 2

    def test_grpc_backend_name(self):
        dispatcher, _ = _dispatcher()
        result = dispatcher.call(
            "create_grpc_api_from_proto",
            {
                "apiId": "users",
                "displayName": "Users",
                "protoDefinition": USERS_PROTO,
                "serviceUrl": "grpcs://users.internal:443",
            },
        )
        assert result.payload["backend"] == "users-grpc-backend"


class TestVersionAndRevisionTools:
    def test_create_api_version_uses_existing_scheme(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher, initialVersion="v1")
        result = dispatcher.call("create_api_version", {"apiId": "weather", "versionId": "v2", "displayName": "Weather v2"})

        assert result.ok is True
        assert result.payload["version"]["id"] == "weather-v2"
        assert result.payload["version"]["path"] == "weather/v2"
        assert result.payload["operationCount"] == 0

    def test_create_api_version_with_contract(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher, initialVersion="v1")
        result = dispatcher.call(
            "create_api_version", {"apiId": "weather", "versionId": "v2", "yamlContract": WEATHER}
        )
        assert result.payload["operationCount"] == 1

    def test_create_api_version_scheme_conflict(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher, initialVersion="v1")
        result = dispatcher.call(
            "create_api_version", {"apiId": "weather", "versionId": "v2", "versioningScheme": "Header"}
        )
        assert result.error["code"] == "SCHEME_CONFLICT"
        assert result.error["entities"] == {"versionSet": "weather-version-set"}

    def test_create_api_version_of_missing_api(self):
        dispatcher, _ = _dispatcher()
        result = dispatcher.call("create_api_version", {"apiId": "ghost", "versionId": "v2"})
        assert result.error["code"] == "NOT_FOUND"

    def test_both_contracts_rejected(self):
        dispatcher, _ = _dispatcher()
        result = dispatcher.call(
            "create_api_version",
            {"apiId": "weather", "versionId": "v2", "yamlContract": WEATHER, "protoDefinition": USERS_PROTO},
        )
        assert result.error["field"] == "protoDefinition"

    def test_list_api_versions(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher, initialVersion="v1")
        dispatcher.call("create_api_version", {"apiId": "weather", "versionId": "v2"})
        result = dispatcher.call("list_api_versions", {"apiId": "weather"})
        assert [v["version"] for v in result.payload["versions"]] == ["v1", "v2"]

    def test_revisions(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher)
        created = dispatcher.call("create_api_revision", {"apiId": "weather", "description": "fix typo"})
        assert created.payload["revision"]["id"] == "weather;rev=2"
        assert created.payload["revision"]["isCurrent"] is True

        listed = dispatcher.call("list_api_revisions", {"apiId": "weather"})
        assert [r["isCurrent"] for r in listed.payload["revisions"]] == [False, True]

    def test_revision_with_unknown_source(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher)
        result = dispatcher.call("create_api_revision", {"apiId": "weather", "sourceApiRevision": "9"})
        assert result.error["code"] == "NOT_FOUND"

    def test_get_api_and_operations(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher)
        api = dispatcher.call("get_api", {"apiId": "weather"})
        assert api.payload["operationCount"] == 1
        ops = dispatcher.call("get_api_operations", {"apiId": "weather"})
        assert ops.payload["operations"][0]["urlTemplate"] == "/forecast"


class TestProductTools:
    def test_product_association_flow(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher)
        created = dispatcher.call("create_product", {"productId": "starter", "displayName": "Starter"})
        assert created.payload["product"]["state"] == "published"

        first = dispatcher.call("add_api_to_product", {"productId": "starter", "apiId": "weather"})
        second = dispatcher.call("add_api_to_product", {"productId": "starter", "apiId": "weather"})
        assert first.ok and second.ok

        products = dispatcher.call("get_api_products", {"apiId": "weather"})
        assert [p["id"] for p in products.payload["products"]] == ["starter"]

    def test_add_api_to_missing_product(self):
        dispatcher, _ = _dispatcher()
        _import_weather(dispatcher)
        result = dispatcher.call("add_api_to_product", {"productId": "starter", "apiId": "weather"})
        assert result.error["code"] == "PRECONDITION_FAILED"
        assert result.error["missing"] == "product"

    def test_add_missing_api_to_product(self):
        dispatcher, _ = _dispatcher()
        dispatcher.call("create_product", {"productId": "starter", "displayName": "Starter"})
        result = dispatcher.call("add_api_to_product", {"productId": "starter", "apiId": "weather"})
        assert result.error["missing"] == "api"

    def test_subscription_returns_keys(self):
        dispatcher, _ = _dispatcher()
        dispatcher.call("create_product", {"productId": "starter", "displayName": "Starter"})
        result = dispatcher.call(
            "create_subscription", {"subscriptionId": "team-a", "displayName": "Team A", "productId": "starter"}
        )
        sub = result.payload["subscription"]
        assert sub["scope"] == "/products/starter"
        assert len(sub["primaryKey"]) == 32

        listed = dispatcher.call("list_subscriptions", {})
        assert "primaryKey" not in listed.payload["subscriptions"][0]

    def test_list_products_filter_and_paging(self):
        dispatcher, _ = _dispatcher()
        for pid in ("alpha", "beta", "gamma"):
            dispatcher.call("create_product", {"productId": pid, "displayName": pid.title()})
        filtered = dispatcher.call("list_products", {"filter": "ta"})
        assert [p["id"] for p in filtered.payload["products"]] == ["beta"]
        paged = dispatcher.call("list_products", {"top": 1, "skip": 1})
        assert [p["id"] for p in paged.payload["products"]] == ["beta"]

    def test_get_missing_subscription(self):
        dispatcher, _ = _dispatcher()
        result = dispatcher.call("get_subscription", {"subscriptionId": "nobody"})
        assert result.error["code"] == "NOT_FOUND"
        assert result.error["entities"] == {"subscription": "nobody"}
