from pathlib import Path
from unittest.mock import patch

import pytest

from apim_lifecycle.contract.loader import load_contract
from apim_lifecycle.dependencies import DependencyOrchestrator
from apim_lifecycle.errors import AccessDenied, NotFound, PreconditionFailed, ValidationError
from apim_lifecycle.gateway.base import Backend, Product, ProductState, Subscription
from apim_lifecycle.gateway.errors import GatewayConflict, GatewayUnauthorized
from apim_lifecycle.gateway.memory import InMemoryGateway
from apim_lifecycle.lifecycle import ApiIdentity, ResourceLifecycleManager

FIXTURES = Path(__file__).parent / "fixtures"


def _setup(with_api: bool = True) -> tuple[DependencyOrchestrator, InMemoryGateway]:
    gateway = InMemoryGateway()
    if with_api:
        ResourceLifecycleManager(gateway).create_or_update_api(
            ApiIdentity(api_id="weather"), load_contract(FIXTURES / "weather.yaml")
        )
    return DependencyOrchestrator(gateway, timeout=5.0), gateway


def _product(state: ProductState = ProductState.PUBLISHED) -> Product:
    return Product(product_id="starter", display_name="Starter", state=state)


class TestProducts:
    def test_ensure_product_creates_then_updates(self):
        orchestrator, gateway = _setup(with_api=False)
        orchestrator.ensure_product(_product())
        updated = orchestrator.ensure_product(_product().model_copy(update={"description": "Entry tier"}))
        assert updated.description == "Entry tier"
        assert len(gateway.list_products(timeout=1)) == 1

    def test_publish_product(self):
        orchestrator, _ = _setup(with_api=False)
        orchestrator.ensure_product(_product(ProductState.NOT_PUBLISHED))
        published = orchestrator.publish_product("starter")
        assert published.state is ProductState.PUBLISHED
        assert orchestrator.publish_product("starter").state is ProductState.PUBLISHED

    def test_get_missing_product(self):
        orchestrator, _ = _setup(with_api=False)
        with pytest.raises(NotFound) as exc:
            orchestrator.get_product("ghost")
        assert exc.value.entities == {"product": "ghost"}

    def test_invalid_product_id(self):
        orchestrator, _ = _setup(with_api=False)
        with pytest.raises(ValidationError) as exc:
            orchestrator.ensure_product(Product(product_id="has space", display_name="X"))
        assert exc.value.field == "productId"


class TestAssociateApi:
    def test_associate_existing_api_and_product(self):
        orchestrator, _ = _setup()
        orchestrator.ensure_product(_product())
        orchestrator.associate_api("starter", "weather")
        assert [p.product_id for p in orchestrator.get_api_products("weather")] == ["starter"]

    def test_associate_twice_is_noop(self):
        orchestrator, gateway = _setup()
        orchestrator.ensure_product(_product())
        orchestrator.associate_api("starter", "weather")
        with patch.object(gateway, "associate_api_to_product") as associate:
            orchestrator.associate_api("starter", "weather")
        associate.assert_not_called()
        assert len(orchestrator.get_api_products("weather")) == 1

    def test_missing_product_is_precondition_failure(self):
        orchestrator, gateway = _setup()
        with pytest.raises(PreconditionFailed) as exc:
            orchestrator.associate_api("starter", "weather")
        assert exc.value.missing == "product"
        assert exc.value.to_payload()["missing"] == "product"
        assert gateway.list_products(timeout=1) == []

    def test_missing_api_is_precondition_failure(self):
        orchestrator, _ = _setup(with_api=False)
        orchestrator.ensure_product(_product())
        with pytest.raises(PreconditionFailed) as exc:
            orchestrator.associate_api("starter", "weather")
        assert exc.value.missing == "api"
        assert exc.value.entities == {"product": "starter", "api": "weather"}

    def test_remote_conflict_counts_as_associated(self):
        orchestrator, gateway = _setup()
        orchestrator.ensure_product(_product())
        with patch.object(gateway, "associate_api_to_product", side_effect=GatewayConflict("exists", 409)):
            orchestrator.associate_api("starter", "weather")

    def test_unauthorized_is_access_denied(self):
        orchestrator, gateway = _setup()
        orchestrator.ensure_product(_product())
        with patch.object(gateway, "associate_api_to_product", side_effect=GatewayUnauthorized("no", 403)):
            with pytest.raises(AccessDenied):
                orchestrator.associate_api("starter", "weather")


class TestSubscriptions:
    def test_subscription_gets_generated_keys(self):
        orchestrator, _ = _setup(with_api=False)
        orchestrator.ensure_product(_product())
        sub = orchestrator.ensure_subscription(
            Subscription(subscription_id="team-a", display_name="Team A", product_id="starter")
        )
        assert sub.scope == "/products/starter"
        assert len(sub.primary_key.get_secret_value()) == 32
        assert sub.primary_key != sub.secondary_key

    def test_keys_survive_update(self):
        orchestrator, _ = _setup(with_api=False)
        orchestrator.ensure_product(_product())
        sub = Subscription(subscription_id="team-a", display_name="Team A", product_id="starter")
        first = orchestrator.ensure_subscription(sub)
        second = orchestrator.ensure_subscription(sub.model_copy(update={"display_name": "Team A2"}))
        assert second.primary_key.get_secret_value() == first.primary_key.get_secret_value()
        assert second.display_name == "Team A2"

    def test_subscription_needs_product(self):
        orchestrator, _ = _setup(with_api=False)
        with pytest.raises(PreconditionFailed) as exc:
            orchestrator.ensure_subscription(
                Subscription(subscription_id="team-a", display_name="Team A", product_id="missing")
            )
        assert exc.value.missing == "product"
        assert orchestrator.list_subscriptions() == []

    def test_get_missing_subscription(self):
        orchestrator, _ = _setup(with_api=False)
        with pytest.raises(NotFound):
            orchestrator.get_subscription("nobody")


class TestBackends:
    def test_ensure_backend(self):
        orchestrator, _ = _setup(with_api=False)
        orchestrator.ensure_backend(Backend(name="weather-backend", url="https://api.weather.example.com"))
        orchestrator.ensure_backend(Backend(name="weather-backend", url="https://api2.weather.example.com"))
        backends = orchestrator.list_backends()
        assert [b.url for b in backends] == ["https://api2.weather.example.com"]
