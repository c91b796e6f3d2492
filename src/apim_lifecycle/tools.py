"""Tool-call surface.

Each tool takes a flat camelCase argument object, validates it with a
pydantic model and returns a ToolResult carrying either a JSON-ready payload
or a structured error.
"""

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from apim_lifecycle.contract.base import ContractFormat, Operation, ParsedContract
from apim_lifecycle.contract.loader import parse_contract
from apim_lifecycle.dependencies import DependencyOrchestrator
from apim_lifecycle.errors import LifecycleError, ValidationError
from apim_lifecycle.gateway.base import (
    ApiResource,
    ApiRevision,
    Backend,
    Product,
    ProductState,
    Subscription,
    SubscriptionState,
    VersioningScheme,
)
from apim_lifecycle.lifecycle import ApiIdentity, ResourceLifecycleManager
from apim_lifecycle.log import get_logger
from apim_lifecycle.versioning import VersionStrategyResolver

logger = get_logger(__name__)


class ToolResult(BaseModel):
    ok: bool
    payload: dict | None = None
    error: dict | None = None


# --- Argument models ---


class ToolArgs(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ListArgs(ToolArgs):
    filter: str | None = None
    top: int | None = Field(default=None, ge=1)
    skip: int = Field(default=0, ge=0)


class ApiArgs(ToolArgs):
    api_id: str


class ImportArgs(ToolArgs):
    api_id: str
    display_name: str
    description: str | None = None
    path: str | None = None
    service_url: str | None = None
    protocols: list[str] | None = None
    subscription_required: bool = True
    initial_version: str | None = None
    versioning_scheme: str = VersioningScheme.SEGMENT.value
    version_query_name: str | None = None
    version_header_name: str | None = None


class YamlImportArgs(ImportArgs):
    yaml_contract: str


class ProtoImportArgs(ImportArgs):
    proto_definition: str


class VersionArgs(ToolArgs):
    api_id: str
    version_id: str
    display_name: str | None = None
    description: str | None = None
    new_api_id: str | None = None
    versioning_scheme: str | None = None
    version_query_name: str | None = None
    version_header_name: str | None = None
    yaml_contract: str | None = None
    proto_definition: str | None = None


class RevisionArgs(ToolArgs):
    api_id: str
    description: str | None = None
    source_api_revision: int | None = Field(default=None, ge=1)


class ProductArgs(ToolArgs):
    product_id: str


class CreateProductArgs(ToolArgs):
    product_id: str
    display_name: str
    description: str = ""
    subscription_required: bool = True
    approval_required: bool = False
    state: ProductState = ProductState.PUBLISHED


class AssociationArgs(ToolArgs):
    product_id: str
    api_id: str


class SubscriptionArgs(ToolArgs):
    subscription_id: str


class CreateSubscriptionArgs(ToolArgs):
    subscription_id: str
    display_name: str
    product_id: str
    user_id: str | None = None
    primary_key: str | None = None
    secondary_key: str | None = None
    state: SubscriptionState = SubscriptionState.ACTIVE


# --- Dispatcher ---


class ToolDispatcher:
    """Routes tool calls to the lifecycle manager and dependency orchestrator."""

    def __init__(
        self,
        manager: ResourceLifecycleManager,
        orchestrator: DependencyOrchestrator,
        resolver: VersionStrategyResolver | None = None,
    ):
        self.manager = manager
        self.orchestrator = orchestrator
        self.resolver = resolver or manager.resolver
        self._tools = {
            "list_apis": (ListArgs, self._list_apis),
            "get_api": (ApiArgs, self._get_api),
            "create_api_from_yaml": (YamlImportArgs, self._create_api_from_yaml),
            "create_grpc_api_from_proto": (ProtoImportArgs, self._create_grpc_api_from_proto),
            "create_api_version": (VersionArgs, self._create_api_version),
            "list_api_versions": (ApiArgs, self._list_api_versions),
            "create_api_revision": (RevisionArgs, self._create_api_revision),
            "list_api_revisions": (ApiArgs, self._list_api_revisions),
            "get_api_operations": (ApiArgs, self._get_api_operations),
            "get_api_products": (ApiArgs, self._get_api_products),
            "list_products": (ListArgs, self._list_products),
            "get_product": (ProductArgs, self._get_product),
            "create_product": (CreateProductArgs, self._create_product),
            "add_api_to_product": (AssociationArgs, self._add_api_to_product),
            "list_subscriptions": (ListArgs, self._list_subscriptions),
            "get_subscription": (SubscriptionArgs, self._get_subscription),
            "create_subscription": (CreateSubscriptionArgs, self._create_subscription),
            "list_backends": (ListArgs, self._list_backends),
        }

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    def call(self, name: str, arguments: dict | None = None) -> ToolResult:
        """Run one tool; engine errors come back as a failed ToolResult."""
        try:
            if name not in self._tools:
                raise ValidationError(f"unknown tool '{name}'", field="name")
            model, handler = self._tools[name]
            try:
                args = model.model_validate(arguments or {})
            except pydantic.ValidationError as e:
                raise _invalid_arguments(e) from None
            payload = handler(args)
        except LifecycleError as e:
            logger.warning("tool_failed", tool=name, code=e.code, error=str(e))
            return ToolResult(ok=False, error=e.to_payload())
        logger.info("tool_completed", tool=name)
        return ToolResult(ok=True, payload=payload)

    # --- APIs ---

    def _list_apis(self, args: ListArgs) -> dict:
        apis = _page(self.manager.list_apis(), args, "api_id", "display_name")
        return {"message": f"Found {len(apis)} APIs", "apis": [_api_payload(a) for a in apis]}

    def _get_api(self, args: ApiArgs) -> dict:
        api = self.manager.get_api(args.api_id)
        payload = _api_payload(api)
        payload["operations"] = [_operation_payload(op) for op in api.operations]
        return {"message": f"API details for {api.display_name}", "api": payload, "operationCount": api.operation_count}

    def _create_api_from_yaml(self, args: YamlImportArgs) -> dict:
        contract = parse_contract(args.yaml_contract, ContractFormat.OPENAPI)
        return self._import(args, contract, api_type="http", backend_suffix="backend")

    def _create_grpc_api_from_proto(self, args: ProtoImportArgs) -> dict:
        contract = parse_contract(args.proto_definition, ContractFormat.PROTOBUF)
        return self._import(args, contract, api_type="grpc", backend_suffix="grpc-backend")

    def _import(self, args: ImportArgs, contract: ParsedContract, api_type: str, backend_suffix: str) -> dict:
        identity = ApiIdentity(
            api_id=args.api_id,
            display_name=args.display_name,
            description=args.description,
            path=args.path,
            service_url=args.service_url,
            protocols=args.protocols or ["https"],
            subscription_required=args.subscription_required,
            api_type=api_type,
        )
        routing = None
        if args.initial_version:
            routing = self.resolver.resolve(
                args.versioning_scheme, args.initial_version, args.version_query_name, args.version_header_name
            )

        api = self.manager.create_or_update_api(identity, contract, routing)

        backend = None
        if api.service_url:
            backend = self.orchestrator.ensure_backend(
                Backend(
                    name=f"{api.api_id}-{backend_suffix}",
                    url=api.service_url,
                    title=f"{api.display_name} backend",
                    description=f"Backend service for {api.display_name}",
                )
            )

        message = f"API {api.display_name} imported with {api.operation_count} operations"
        if routing is not None:
            message += f" as version {routing.version_id} ({routing.discriminator})"
        return {
            "message": message,
            "api": _api_payload(api),
            "operationCount": api.operation_count,
            "backend": backend.name if backend else None,
            "warnings": list(contract.warnings),
        }

    def _create_api_version(self, args: VersionArgs) -> dict:
        if args.yaml_contract and args.proto_definition:
            raise ValidationError("pass either yamlContract or protoDefinition, not both", field="protoDefinition")

        scheme = args.versioning_scheme
        if scheme is None:
            version_set = self.manager.get_version_set_for(args.api_id)
            scheme = version_set.versioning_scheme if version_set else VersioningScheme.SEGMENT
        routing = self.resolver.resolve(scheme, args.version_id, args.version_query_name, args.version_header_name)

        contract = None
        if args.yaml_contract:
            contract = parse_contract(args.yaml_contract, ContractFormat.OPENAPI)
        elif args.proto_definition:
            contract = parse_contract(args.proto_definition, ContractFormat.PROTOBUF)

        api = self.manager.create_version(
            args.api_id,
            args.version_id,
            routing,
            new_api_id=args.new_api_id,
            display_name=args.display_name,
            description=args.description,
            contract=contract,
        )
        return {
            "message": f"API version {args.version_id} created for API {args.api_id}",
            "version": _api_payload(api),
            "operationCount": api.operation_count,
        }

    def _list_api_versions(self, args: ApiArgs) -> dict:
        versions = self.manager.list_versions(args.api_id)
        return {
            "message": f"Found {len(versions)} versions for API {args.api_id}",
            "versions": [_api_payload(v) for v in versions],
        }

    def _create_api_revision(self, args: RevisionArgs) -> dict:
        revision = self.manager.create_revision(args.api_id, args.description, args.source_api_revision)
        return {
            "message": f"Revision {revision.revision_number} created and made current for API {args.api_id}",
            "revision": _revision_payload(revision),
        }

    def _list_api_revisions(self, args: ApiArgs) -> dict:
        revisions = self.manager.list_revisions(args.api_id)
        return {
            "message": f"Found {len(revisions)} revisions for API {args.api_id}",
            "revisions": [_revision_payload(r) for r in revisions],
        }

    def _get_api_operations(self, args: ApiArgs) -> dict:
        operations = self.manager.get_operations(args.api_id)
        return {
            "message": f"Found {len(operations)} operations for API {args.api_id}",
            "operations": [_operation_payload(op) for op in operations],
            "operationCount": len(operations),
        }

    def _get_api_products(self, args: ApiArgs) -> dict:
        products = self.orchestrator.get_api_products(args.api_id)
        return {
            "message": f"API {args.api_id} belongs to {len(products)} products",
            "products": [_product_payload(p) for p in products],
        }

    # --- Products, subscriptions, backends ---

    def _list_products(self, args: ListArgs) -> dict:
        products = _page(self.orchestrator.list_products(), args, "product_id", "display_name")
        return {"message": f"Found {len(products)} products", "products": [_product_payload(p) for p in products]}

    def _get_product(self, args: ProductArgs) -> dict:
        product = self.orchestrator.get_product(args.product_id)
        return {"message": f"Product details for {product.display_name}", "product": _product_payload(product)}

    def _create_product(self, args: CreateProductArgs) -> dict:
        product = self.orchestrator.ensure_product(
            Product(
                product_id=args.product_id,
                display_name=args.display_name,
                description=args.description,
                state=args.state,
                subscription_required=args.subscription_required,
                approval_required=args.approval_required,
            )
        )
        return {"message": f"Product {product.display_name} saved", "product": _product_payload(product)}

    def _add_api_to_product(self, args: AssociationArgs) -> dict:
        self.orchestrator.associate_api(args.product_id, args.api_id)
        return {
            "message": f"API {args.api_id} is part of product {args.product_id}",
            "productId": args.product_id,
            "apiId": args.api_id,
        }

    def _list_subscriptions(self, args: ListArgs) -> dict:
        subscriptions = _page(self.orchestrator.list_subscriptions(), args, "subscription_id", "display_name")
        return {
            "message": f"Found {len(subscriptions)} subscriptions",
            "subscriptions": [_subscription_payload(s) for s in subscriptions],
        }

    def _get_subscription(self, args: SubscriptionArgs) -> dict:
        subscription = self.orchestrator.get_subscription(args.subscription_id)
        return {
            "message": f"Subscription details for {subscription.display_name}",
            "subscription": _subscription_payload(subscription, with_keys=True),
        }

    def _create_subscription(self, args: CreateSubscriptionArgs) -> dict:
        subscription = self.orchestrator.ensure_subscription(
            Subscription(
                subscription_id=args.subscription_id,
                display_name=args.display_name,
                product_id=args.product_id,
                state=args.state,
                owner_id=args.user_id,
                primary_key=args.primary_key,
                secondary_key=args.secondary_key,
            )
        )
        return {
            "message": f"Subscription {subscription.display_name} saved for product {subscription.product_id}",
            "subscription": _subscription_payload(subscription, with_keys=True),
        }

    def _list_backends(self, args: ListArgs) -> dict:
        backends = _page(self.orchestrator.list_backends(), args, "name", "title")
        return {"message": f"Found {len(backends)} backends", "backends": [_backend_payload(b) for b in backends]}


# --- Helpers ---


def _invalid_arguments(error: pydantic.ValidationError) -> ValidationError:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or None
    return ValidationError(first["msg"], field=field)


def _page(items: list, args: ListArgs, *fields: str) -> list:
    if args.filter:
        needle = args.filter.lower()
        items = [i for i in items if any(needle in (getattr(i, f) or "").lower() for f in fields)]
    end = None if args.top is None else args.skip + args.top
    return items[args.skip : end]


def _api_payload(api: ApiResource) -> dict:
    return {
        "id": api.api_id,
        "displayName": api.display_name,
        "description": api.description,
        "path": api.path,
        "protocols": api.protocols,
        "serviceUrl": api.service_url,
        "subscriptionRequired": api.subscription_required,
        "apiType": api.api_type,
        "version": api.api_version,
        "versionSetId": api.version_set_id,
        "versioningScheme": api.versioning_scheme.value if api.versioning_scheme else None,
    }


def _operation_payload(op: Operation) -> dict:
    payload = {
        "name": op.name,
        "displayName": op.display_name,
        "method": op.method,
        "urlTemplate": op.url_template,
        "description": op.description,
    }
    if op.rpc_name:
        payload["rpcName"] = op.rpc_name
    return payload


def _revision_payload(revision: ApiRevision) -> dict:
    return {
        "id": f"{revision.api_id};rev={revision.revision_number}",
        "apiId": revision.api_id,
        "revision": revision.revision_number,
        "description": revision.description,
        "isCurrent": revision.is_current,
        "createdAt": revision.created_at.isoformat(),
    }


def _product_payload(product: Product) -> dict:
    return {
        "id": product.product_id,
        "displayName": product.display_name,
        "description": product.description,
        "state": product.state.value,
        "subscriptionRequired": product.subscription_required,
        "approvalRequired": product.approval_required,
    }


def _subscription_payload(subscription: Subscription, with_keys: bool = False) -> dict:
    payload = {
        "id": subscription.subscription_id,
        "displayName": subscription.display_name,
        "scope": subscription.scope,
        "state": subscription.state.value,
        "ownerId": subscription.owner_id,
    }
    if with_keys:
        payload["primaryKey"] = subscription.primary_key.get_secret_value() if subscription.primary_key else None
        payload["secondaryKey"] = subscription.secondary_key.get_secret_value() if subscription.secondary_key else None
    return payload


def _backend_payload(backend: Backend) -> dict:
    return {
        "name": backend.name,
        "url": backend.url,
        "protocol": backend.protocol.value,
        "title": backend.title,
        "description": backend.description,
    }
