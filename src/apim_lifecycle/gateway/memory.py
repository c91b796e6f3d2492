"""In-process gateway used for dry runs and tests.

Behaves like a natively idempotent management plane: every create is an
upsert, a new API starts with current revision 1, and releasing a revision
moves the current flag in a single assignment.
"""

import secrets
import threading

from pydantic import SecretStr

from apim_lifecycle.contract.base import Operation

from .base import (
    ApiResource,
    ApiRevision,
    Backend,
    GatewayClient,
    Product,
    Subscription,
    VersionSet,
)
from .errors import GatewayConflict, GatewayNotFound


class InMemoryGateway(GatewayClient):
    """Thread-safe dictionary-backed GatewayClient."""

    def __init__(self):
        self._lock = threading.RLock()
        self._apis: dict[str, ApiResource] = {}
        self._operations: dict[str, dict[str, Operation]] = {}
        self._version_sets: dict[str, VersionSet] = {}
        self._revisions: dict[str, dict[int, ApiRevision]] = {}
        self._products: dict[str, Product] = {}
        self._product_apis: dict[str, set[str]] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._backends: dict[str, Backend] = {}

    # --- APIs ---

    def get_api(self, api_id: str, *, timeout: float) -> ApiResource:
        with self._lock:
            return self._api(api_id).model_copy(deep=True)

    def list_apis(self, *, timeout: float) -> list[ApiResource]:
        with self._lock:
            return [api.model_copy(deep=True) for api in self._apis.values()]

    def create_or_update_api(self, api_id: str, definition: ApiResource, *, timeout: float) -> ApiResource:
        with self._lock:
            if definition.version_set_id and definition.version_set_id not in self._version_sets:
                raise GatewayNotFound(f"version set '{definition.version_set_id}' not found", 404)
            stored = definition.model_copy(update={"api_id": api_id, "operations": []}, deep=True)
            if api_id not in self._apis:
                self._operations[api_id] = {}
                self._revisions[api_id] = {1: ApiRevision(api_id=api_id, revision_number=1, is_current=True)}
            self._apis[api_id] = stored
            return stored.model_copy(deep=True)

    def list_operations(self, api_id: str, *, timeout: float) -> list[Operation]:
        with self._lock:
            self._api(api_id)
            return list(self._operations[api_id].values())

    def import_operations(self, api_id: str, operations: list[Operation], *, timeout: float) -> None:
        with self._lock:
            self._api(api_id)
            for op in operations:
                self._operations[api_id][op.name] = op

    def delete_operation(self, api_id: str, operation_name: str, *, timeout: float) -> None:
        with self._lock:
            self._api(api_id)
            if operation_name not in self._operations[api_id]:
                raise GatewayNotFound(f"operation '{operation_name}' not found", 404)
            del self._operations[api_id][operation_name]

    # --- Version sets and revisions ---

    def get_version_set(self, version_set_id: str, *, timeout: float) -> VersionSet:
        with self._lock:
            if version_set_id not in self._version_sets:
                raise GatewayNotFound(f"version set '{version_set_id}' not found", 404)
            return self._version_sets[version_set_id].model_copy()

    def create_version_set(self, definition: VersionSet, *, timeout: float) -> VersionSet:
        with self._lock:
            self._version_sets[definition.version_set_id] = definition.model_copy()
            return definition.model_copy()

    def list_revisions(self, api_id: str, *, timeout: float) -> list[ApiRevision]:
        with self._lock:
            self._api(api_id)
            revisions = self._revisions[api_id]
            return [revisions[n].model_copy() for n in sorted(revisions)]

    def create_revision(self, api_id: str, definition: ApiRevision, *, timeout: float) -> ApiRevision:
        with self._lock:
            self._api(api_id)
            revisions = self._revisions[api_id]
            if definition.revision_number in revisions:
                raise GatewayConflict(f"revision {definition.revision_number} already exists", 409)
            stored = definition.model_copy(update={"api_id": api_id, "is_current": False})
            revisions[definition.revision_number] = stored
            return stored.model_copy()

    def release_revision(self, api_id: str, revision_number: int, *, timeout: float) -> ApiRevision:
        with self._lock:
            self._api(api_id)
            revisions = self._revisions[api_id]
            if revision_number not in revisions:
                raise GatewayNotFound(f"revision {revision_number} not found", 404)
            self._revisions[api_id] = {
                n: rev.model_copy(update={"is_current": n == revision_number}) for n, rev in revisions.items()
            }
            return self._revisions[api_id][revision_number].model_copy()

    # --- Products and subscriptions ---

    def get_product(self, product_id: str, *, timeout: float) -> Product:
        with self._lock:
            return self._product(product_id).model_copy()

    def list_products(self, *, timeout: float) -> list[Product]:
        with self._lock:
            return [p.model_copy() for p in self._products.values()]

    def create_or_update_product(self, product_id: str, definition: Product, *, timeout: float) -> Product:
        with self._lock:
            stored = definition.model_copy(update={"product_id": product_id})
            self._products[product_id] = stored
            self._product_apis.setdefault(product_id, set())
            return stored.model_copy()

    def associate_api_to_product(self, product_id: str, api_id: str, *, timeout: float) -> None:
        with self._lock:
            self._product(product_id)
            self._api(api_id)
            self._product_apis[product_id].add(api_id)

    def list_api_products(self, api_id: str, *, timeout: float) -> list[Product]:
        with self._lock:
            self._api(api_id)
            return [
                self._products[pid].model_copy()
                for pid, apis in self._product_apis.items()
                if api_id in apis
            ]

    def get_subscription(self, subscription_id: str, *, timeout: float) -> Subscription:
        with self._lock:
            if subscription_id not in self._subscriptions:
                raise GatewayNotFound(f"subscription '{subscription_id}' not found", 404)
            return self._subscriptions[subscription_id].model_copy()

    def list_subscriptions(self, *, timeout: float) -> list[Subscription]:
        with self._lock:
            return [s.model_copy() for s in self._subscriptions.values()]

    def create_or_update_subscription(
        self, subscription_id: str, definition: Subscription, *, timeout: float
    ) -> Subscription:
        with self._lock:
            self._product(definition.product_id)
            previous = self._subscriptions.get(subscription_id)
            stored = definition.model_copy(
                update={
                    "subscription_id": subscription_id,
                    "primary_key": definition.primary_key or _existing_or_new(previous, "primary_key"),
                    "secondary_key": definition.secondary_key or _existing_or_new(previous, "secondary_key"),
                }
            )
            self._subscriptions[subscription_id] = stored
            return stored.model_copy()

    # --- Backends ---

    def list_backends(self, *, timeout: float) -> list[Backend]:
        with self._lock:
            return [b.model_copy(deep=True) for b in self._backends.values()]

    def create_or_update_backend(self, name: str, definition: Backend, *, timeout: float) -> Backend:
        with self._lock:
            stored = definition.model_copy(update={"name": name}, deep=True)
            self._backends[name] = stored
            return stored.model_copy(deep=True)

    def _api(self, api_id: str) -> ApiResource:
        if api_id not in self._apis:
            raise GatewayNotFound(f"api '{api_id}' not found", 404)
        return self._apis[api_id]

    def _product(self, product_id: str) -> Product:
        if product_id not in self._products:
            raise GatewayNotFound(f"product '{product_id}' not found", 404)
        return self._products[product_id]


def _existing_or_new(previous: Subscription | None, field: str) -> SecretStr:
    if previous is not None and getattr(previous, field) is not None:
        return getattr(previous, field)
    return SecretStr(secrets.token_hex(16))
