"""Dependency orchestrator for products, subscriptions and backends.

Checks that the resources an association depends on exist before writing
it, and treats an association that is already in place as success.
"""

from apim_lifecycle.errors import Conflict, NotFound, PreconditionFailed, gateway_errors
from apim_lifecycle.gateway.base import Backend, GatewayClient, Product, ProductState, Subscription
from apim_lifecycle.lifecycle import DEFAULT_TIMEOUT, check_resource_id
from apim_lifecycle.locks import KeyedLocks, association_key, product_key
from apim_lifecycle.log import get_logger

logger = get_logger(__name__)


class DependencyOrchestrator:
    """Owns Product, Subscription and Backend writes."""

    def __init__(self, gateway: GatewayClient, locks: KeyedLocks | None = None, timeout: float = DEFAULT_TIMEOUT):
        self.gateway = gateway
        self.locks = locks or KeyedLocks()
        self.timeout = timeout

    def ensure_product(self, product: Product) -> Product:
        """Get-or-create a product; an existing one is updated in place."""
        check_resource_id(product.product_id, "productId")
        with self.locks.hold(product_key(product.product_id)):
            existing = self._find_product(product.product_id)
            with gateway_errors("product", product=product.product_id):
                stored = self.gateway.create_or_update_product(product.product_id, product, timeout=self.timeout)
        logger.info(
            "product_updated" if existing else "product_created",
            product_id=stored.product_id,
            state=stored.state.value,
        )
        return stored

    def publish_product(self, product_id: str) -> Product:
        check_resource_id(product_id, "productId")
        with self.locks.hold(product_key(product_id)):
            product = self.get_product(product_id)
            if product.state is ProductState.PUBLISHED:
                return product
            with gateway_errors("product", product=product_id):
                stored = self.gateway.create_or_update_product(
                    product_id, product.model_copy(update={"state": ProductState.PUBLISHED}), timeout=self.timeout
                )
        logger.info("product_published", product_id=product_id)
        return stored

    def associate_api(self, product_id: str, api_id: str) -> None:
        """Add an API to a product; a pair that is already linked is left alone."""
        check_resource_id(product_id, "productId")
        check_resource_id(api_id, "apiId")
        ids = {"product": product_id, "api": api_id}

        with self.locks.hold(association_key(product_id, api_id)):
            if self._find_product(product_id) is None:
                raise PreconditionFailed("product", ids)
            try:
                with gateway_errors("api", **ids):
                    linked = self.gateway.list_api_products(api_id, timeout=self.timeout)
            except NotFound:
                raise PreconditionFailed("api", ids) from None

            if any(p.product_id == product_id for p in linked):
                logger.info("api_already_in_product", product_id=product_id, api_id=api_id)
                return

            try:
                with gateway_errors("product", **ids):
                    self.gateway.associate_api_to_product(product_id, api_id, timeout=self.timeout)
            except Conflict:
                logger.info("api_already_in_product", product_id=product_id, api_id=api_id)
                return
        logger.info("api_added_to_product", product_id=product_id, api_id=api_id)

    def ensure_subscription(self, subscription: Subscription) -> Subscription:
        """Create or update a subscription scoped to an existing product.

        The returned keys are secrets and are never written to the log.
        """
        check_resource_id(subscription.subscription_id, "subscriptionId")
        ids = {"subscription": subscription.subscription_id, "product": subscription.product_id}

        if self._find_product(subscription.product_id) is None:
            raise PreconditionFailed("product", ids)
        with gateway_errors("subscription", **ids):
            stored = self.gateway.create_or_update_subscription(
                subscription.subscription_id, subscription, timeout=self.timeout
            )
        logger.info(
            "subscription_saved",
            subscription_id=stored.subscription_id,
            product_id=stored.product_id,
            state=stored.state.value,
        )
        return stored

    def ensure_backend(self, backend: Backend) -> Backend:
        check_resource_id(backend.name, "backendId")
        with gateway_errors("backend", backend=backend.name):
            stored = self.gateway.create_or_update_backend(backend.name, backend, timeout=self.timeout)
        logger.info("backend_saved", backend=stored.name, url=stored.url)
        return stored

    # --- Reads ---

    def get_product(self, product_id: str) -> Product:
        with gateway_errors("product", product=product_id):
            return self.gateway.get_product(product_id, timeout=self.timeout)

    def list_products(self) -> list[Product]:
        with gateway_errors("product"):
            return self.gateway.list_products(timeout=self.timeout)

    def get_api_products(self, api_id: str) -> list[Product]:
        check_resource_id(api_id, "apiId")
        with gateway_errors("api", api=api_id):
            return self.gateway.list_api_products(api_id, timeout=self.timeout)

    def get_subscription(self, subscription_id: str) -> Subscription:
        with gateway_errors("subscription", subscription=subscription_id):
            return self.gateway.get_subscription(subscription_id, timeout=self.timeout)

    def list_subscriptions(self) -> list[Subscription]:
        with gateway_errors("subscription"):
            return self.gateway.list_subscriptions(timeout=self.timeout)

    def list_backends(self) -> list[Backend]:
        with gateway_errors("backend"):
            return self.gateway.list_backends(timeout=self.timeout)

    def _find_product(self, product_id: str) -> Product | None:
        try:
            return self.get_product(product_id)
        except NotFound:
            return None
