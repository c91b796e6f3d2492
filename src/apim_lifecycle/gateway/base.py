"""Control-plane resource models and the gateway client contract.

Every lifecycle component talks to the remote management plane through a
GatewayClient. Implementations raise only the errors in
``apim_lifecycle.gateway.errors``.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, SecretStr, field_validator

from apim_lifecycle.contract.base import Operation


class VersioningScheme(str, Enum):
    SEGMENT = "Segment"
    QUERY = "Query"
    HEADER = "Header"


class ProductState(str, Enum):
    NOT_PUBLISHED = "notPublished"
    PUBLISHED = "published"


class SubscriptionState(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BackendProtocol(str, Enum):
    HTTP = "http"
    SOAP = "soap"
    FABRIC = "fabric"


class ApiResource(BaseModel):
    """An API as deployed on the gateway."""

    api_id: str
    display_name: str
    description: str = ""
    path: str
    service_url: str | None = None
    protocols: list[str] = ["https"]
    subscription_required: bool = True
    api_type: str = "http"  # http / grpc
    version_set_id: str | None = None
    api_version: str | None = None
    versioning_scheme: VersioningScheme | None = None
    operations: list[Operation] = []

    @field_validator("protocols")
    @classmethod
    def _unique_protocols(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(p.lower() for p in value))

    @property
    def operation_count(self) -> int:
        return len(self.operations)


class VersionSet(BaseModel):
    """Groups every version of one logical API under a single scheme."""

    version_set_id: str
    display_name: str
    description: str = ""
    versioning_scheme: VersioningScheme
    version_query_name: str | None = None
    version_header_name: str | None = None


class ApiRevision(BaseModel):
    api_id: str
    revision_number: int = Field(ge=1)
    description: str = ""
    is_current: bool = False
    source_revision: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Product(BaseModel):
    product_id: str
    display_name: str
    description: str = ""
    state: ProductState = ProductState.NOT_PUBLISHED
    subscription_required: bool = True
    approval_required: bool = False


class Subscription(BaseModel):
    """A subscription scoped to one product.

    Keys are secrets: they only leave the model through get_secret_value().
    """

    subscription_id: str
    display_name: str
    product_id: str
    state: SubscriptionState = SubscriptionState.ACTIVE
    owner_id: str | None = None
    primary_key: SecretStr | None = None
    secondary_key: SecretStr | None = None

    @property
    def scope(self) -> str:
        return f"/products/{self.product_id}"


class BackendTls(BaseModel):
    validate_certificate_chain: bool = True
    validate_certificate_name: bool = True


class Backend(BaseModel):
    name: str
    url: str
    protocol: BackendProtocol = BackendProtocol.HTTP
    title: str = ""
    description: str = ""
    credentials: dict | None = None
    tls: BackendTls | None = None


class GatewayClient(ABC):
    """Create/get/list primitives of the remote management plane.

    Every call carries the caller's timeout in seconds.
    """

    # --- APIs ---

    @abstractmethod
    def get_api(self, api_id: str, *, timeout: float) -> ApiResource:
        ...

    @abstractmethod
    def list_apis(self, *, timeout: float) -> list[ApiResource]:
        ...

    @abstractmethod
    def create_or_update_api(self, api_id: str, definition: ApiResource, *, timeout: float) -> ApiResource:
        """Create the API, or converge an existing one to the definition."""

    @abstractmethod
    def list_operations(self, api_id: str, *, timeout: float) -> list[Operation]:
        ...

    @abstractmethod
    def import_operations(self, api_id: str, operations: list[Operation], *, timeout: float) -> None:
        """Create or replace each operation by name."""

    @abstractmethod
    def delete_operation(self, api_id: str, operation_name: str, *, timeout: float) -> None:
        ...

    # --- Version sets and revisions ---

    @abstractmethod
    def get_version_set(self, version_set_id: str, *, timeout: float) -> VersionSet:
        ...

    @abstractmethod
    def create_version_set(self, definition: VersionSet, *, timeout: float) -> VersionSet:
        ...

    @abstractmethod
    def list_revisions(self, api_id: str, *, timeout: float) -> list[ApiRevision]:
        ...

    @abstractmethod
    def create_revision(self, api_id: str, definition: ApiRevision, *, timeout: float) -> ApiRevision:
        """Create a revision that is not yet current."""

    @abstractmethod
    def release_revision(self, api_id: str, revision_number: int, *, timeout: float) -> ApiRevision:
        """Make a revision current; the previous current one stops being current."""

    # --- Products and subscriptions ---

    @abstractmethod
    def get_product(self, product_id: str, *, timeout: float) -> Product:
        ...

    @abstractmethod
    def list_products(self, *, timeout: float) -> list[Product]:
        ...

    @abstractmethod
    def create_or_update_product(self, product_id: str, definition: Product, *, timeout: float) -> Product:
        ...

    @abstractmethod
    def associate_api_to_product(self, product_id: str, api_id: str, *, timeout: float) -> None:
        ...

    @abstractmethod
    def list_api_products(self, api_id: str, *, timeout: float) -> list[Product]:
        ...

    @abstractmethod
    def get_subscription(self, subscription_id: str, *, timeout: float) -> Subscription:
        ...

    @abstractmethod
    def list_subscriptions(self, *, timeout: float) -> list[Subscription]:
        ...

    @abstractmethod
    def create_or_update_subscription(
        self, subscription_id: str, definition: Subscription, *, timeout: float
    ) -> Subscription:
        ...

    # --- Backends ---

    @abstractmethod
    def list_backends(self, *, timeout: float) -> list[Backend]:
        ...

    @abstractmethod
    def create_or_update_backend(self, name: str, definition: Backend, *, timeout: float) -> Backend:
        ...
