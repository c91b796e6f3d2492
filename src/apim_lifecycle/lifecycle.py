"""Resource lifecycle manager.

Creates and converges APIs, their version sets, revisions and operations.
Every mutation of one api id runs under that id's lock, and every step is
an idempotent upsert, so a caller interrupted half way can simply call
again to converge.
"""

import re

from pydantic import BaseModel

from apim_lifecycle.contract.base import Operation, ParsedContract
from apim_lifecycle.errors import NotFound, ValidationError, gateway_errors
from apim_lifecycle.gateway.base import ApiResource, ApiRevision, GatewayClient, VersioningScheme, VersionSet
from apim_lifecycle.gateway.errors import GatewayNotFound
from apim_lifecycle.locks import KeyedLocks, api_key
from apim_lifecycle.log import get_logger
from apim_lifecycle.versioning import (
    VersionRouting,
    VersionStrategyResolver,
    ensure_same_scheme,
    routing_for_version_set,
    version_set_for,
)

logger = get_logger(__name__)

RESOURCE_ID = re.compile(r"[A-Za-z0-9._-]{1,80}")

DEFAULT_TIMEOUT = 30.0


class ApiIdentity(BaseModel):
    """Who an imported contract becomes on the gateway."""

    api_id: str
    display_name: str | None = None
    description: str | None = None
    path: str | None = None
    service_url: str | None = None
    protocols: list[str] = ["https"]
    subscription_required: bool = True
    api_type: str = "http"
    version_set_id: str | None = None


def check_resource_id(value: str, field: str) -> None:
    if not value or not RESOURCE_ID.fullmatch(value):
        raise ValidationError(f"invalid identifier '{value}'", field=field)


def normalize_path(path: str) -> str:
    return "/".join(segment for segment in path.split("/") if segment)


def unversioned_path(path: str, api_version: str | None, scheme: VersioningScheme | None) -> str:
    """Path without the version segment a Segment scheme appends."""
    if scheme is VersioningScheme.SEGMENT and api_version:
        if path == api_version:
            return ""
        if path.endswith(f"/{api_version}"):
            return path[: -len(api_version) - 1]
    return path


class ResourceLifecycleManager:
    """Orchestrates API, version set, revision and operation writes."""

    def __init__(
        self,
        gateway: GatewayClient,
        resolver: VersionStrategyResolver | None = None,
        locks: KeyedLocks | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.gateway = gateway
        self.resolver = resolver or VersionStrategyResolver()
        self.locks = locks or KeyedLocks()
        self.timeout = timeout

    # --- Mutations ---

    def create_or_update_api(
        self, identity: ApiIdentity, contract: ParsedContract, routing: VersionRouting | None = None
    ) -> ApiResource:
        """Create the API described by the contract, or converge it.

        Operations are matched to deployed ones by method and URL template
        (or rpc name); remote operations missing from the contract are
        removed, so the result holds exactly the contract's operations.
        """
        api_id = identity.api_id
        check_resource_id(api_id, "apiId")

        with self.locks.hold(api_key(api_id)):
            existing = self._find_api(api_id)
            definition = self._definition(identity, contract, existing)

            if routing is not None:
                version_set = self._ensure_version_set(identity, existing, routing, definition.display_name)
                root = definition.path
                if existing is not None and identity.path is None:
                    root = unversioned_path(root, existing.api_version, version_set.versioning_scheme)
                definition = definition.model_copy(
                    update={
                        "path": routing.apply_to_path(root),
                        "version_set_id": version_set.version_set_id,
                        "api_version": routing.version_id,
                        "versioning_scheme": version_set.versioning_scheme,
                    }
                )

            # The PUT upserts the API itself, so a 404 means its version set is gone
            ids = {"api": api_id}
            subject = "api"
            if definition.version_set_id:
                ids["versionSet"] = definition.version_set_id
                subject = "versionSet"
            with gateway_errors(subject, **ids):
                api = self.gateway.create_or_update_api(api_id, definition, timeout=self.timeout)
            logger.info(
                "api_updated" if existing else "api_created",
                api_id=api_id,
                path=api.path,
                version=api.api_version,
                version_set_id=api.version_set_id,
            )

            operations = self._sync_operations(api_id, contract.operations)

        if not operations:
            logger.warning("api_has_no_operations", api_id=api_id, contract=contract.title)
        return api.model_copy(update={"operations": operations})

    def create_version(
        self,
        existing_api_id: str,
        version_id: str,
        routing: VersionRouting,
        *,
        new_api_id: str | None = None,
        display_name: str | None = None,
        description: str | None = None,
        contract: ParsedContract | None = None,
    ) -> ApiResource:
        """Add a version of an existing API to its version set.

        Operations are not copied from other versions; without a contract
        the new version starts with zero operations.
        """
        check_resource_id(existing_api_id, "apiId")
        check_resource_id(version_id, "versionId")
        new_api_id = new_api_id or f"{existing_api_id}-{version_id}"
        check_resource_id(new_api_id, "newApiId")
        if new_api_id == existing_api_id:
            raise ValidationError("a new version needs its own api id", field="newApiId")

        with self.locks.hold(api_key(existing_api_id), api_key(new_api_id)):
            base = self._get_api(existing_api_id)

            if base.version_set_id:
                with gateway_errors("versionSet", versionSet=base.version_set_id, api=existing_api_id):
                    version_set = self.gateway.get_version_set(base.version_set_id, timeout=self.timeout)
                ensure_same_scheme(version_set, routing.scheme)
            else:
                version_set = self._attach_to_new_version_set(base, routing)

            routing = routing_for_version_set(version_set, version_id)
            root = unversioned_path(base.path, base.api_version, version_set.versioning_scheme)

            definition = ApiResource(
                api_id=new_api_id,
                display_name=display_name or base.display_name,
                description=base.description if description is None else description,
                path=routing.apply_to_path(root),
                service_url=base.service_url,
                protocols=base.protocols,
                subscription_required=base.subscription_required,
                api_type=base.api_type,
                version_set_id=version_set.version_set_id,
                api_version=version_id,
                versioning_scheme=version_set.versioning_scheme,
            )
            with gateway_errors("versionSet", api=new_api_id, versionSet=version_set.version_set_id):
                api = self.gateway.create_or_update_api(new_api_id, definition, timeout=self.timeout)
            logger.info(
                "api_version_created",
                api_id=new_api_id,
                base_api_id=existing_api_id,
                version=version_id,
                discriminator=routing.discriminator,
            )

            if contract is not None:
                operations = self._sync_operations(new_api_id, contract.operations)
            else:
                operations = self._list_operations(new_api_id)

        if not operations:
            logger.warning("api_version_has_no_operations", api_id=new_api_id, version=version_id)
        return api.model_copy(update={"operations": operations})

    def create_revision(
        self, api_id: str, description: str | None = None, source_revision: int | None = None
    ) -> ApiRevision:
        """Create the next revision of an API and make it current.

        The revision is created non-current and then released; the release is
        the single transition that moves the current flag, so a failure at
        either step leaves the previous revision current.
        """
        check_resource_id(api_id, "apiId")

        with self.locks.hold(api_key(api_id)):
            self._get_api(api_id)
            with gateway_errors("api", api=api_id):
                revisions = self.gateway.list_revisions(api_id, timeout=self.timeout)

            # Revision 1 exists implicitly even when the remote does not list it
            numbers = [r.revision_number for r in revisions] or [1]
            if source_revision is not None and source_revision not in numbers:
                raise NotFound("revision", f"{api_id};rev={source_revision}")
            current = next((r.revision_number for r in revisions if r.is_current), 1)
            number = max(numbers, default=1) + 1

            draft = ApiRevision(
                api_id=api_id,
                revision_number=number,
                description=description or "",
                source_revision=source_revision or current,
            )
            with gateway_errors("revision", api=api_id, revision=str(number)):
                self.gateway.create_revision(api_id, draft, timeout=self.timeout)
                released = self.gateway.release_revision(api_id, number, timeout=self.timeout)

        logger.info("api_revision_created", api_id=api_id, revision=number, previous=current)
        return released

    # --- Reads ---

    def get_api(self, api_id: str) -> ApiResource:
        check_resource_id(api_id, "apiId")
        api = self._get_api(api_id)
        return api.model_copy(update={"operations": self._list_operations(api_id)})

    def list_apis(self) -> list[ApiResource]:
        with gateway_errors("api"):
            return self.gateway.list_apis(timeout=self.timeout)

    def get_operations(self, api_id: str) -> list[Operation]:
        check_resource_id(api_id, "apiId")
        return self._list_operations(api_id)

    def list_revisions(self, api_id: str) -> list[ApiRevision]:
        check_resource_id(api_id, "apiId")
        with gateway_errors("api", api=api_id):
            return self.gateway.list_revisions(api_id, timeout=self.timeout)

    def get_version_set_for(self, api_id: str) -> VersionSet | None:
        api = self._get_api(api_id)
        if not api.version_set_id:
            return None
        with gateway_errors("versionSet", versionSet=api.version_set_id, api=api_id):
            return self.gateway.get_version_set(api.version_set_id, timeout=self.timeout)

    def list_versions(self, api_id: str) -> list[ApiResource]:
        """Every API sharing the version set of the given API."""
        check_resource_id(api_id, "apiId")
        api = self._get_api(api_id)
        if not api.version_set_id:
            return []
        members = [a for a in self.list_apis() if a.version_set_id == api.version_set_id]
        return sorted(members, key=lambda a: a.api_version or "")

    # --- Internals ---

    def _definition(self, identity: ApiIdentity, contract: ParsedContract, existing: ApiResource | None) -> ApiResource:
        path = normalize_path(identity.path or contract.base_path or identity.api_id)
        definition = ApiResource(
            api_id=identity.api_id,
            display_name=identity.display_name or contract.title,
            description=contract.description if identity.description is None else identity.description,
            path=path,
            service_url=identity.service_url or contract.base_service_url,
            protocols=identity.protocols,
            subscription_required=identity.subscription_required,
            api_type=identity.api_type,
        )
        if existing is None:
            return definition

        # Metadata converges to the contract; version membership is kept
        update = {
            "version_set_id": existing.version_set_id,
            "api_version": existing.api_version,
            "versioning_scheme": existing.versioning_scheme,
        }
        if identity.path is None:
            update["path"] = existing.path
        return definition.model_copy(update=update)

    def _ensure_version_set(
        self, identity: ApiIdentity, existing: ApiResource | None, routing: VersionRouting, display_name: str
    ) -> VersionSet:
        version_set_id = (
            (existing.version_set_id if existing else None)
            or identity.version_set_id
            or f"{identity.api_id}-version-set"
        )
        version_set = self._find_version_set(version_set_id)
        if version_set is not None:
            ensure_same_scheme(version_set, routing.scheme)
            return version_set

        with gateway_errors("versionSet", versionSet=version_set_id, api=identity.api_id):
            version_set = self.gateway.create_version_set(
                version_set_for(version_set_id, display_name, routing), timeout=self.timeout
            )
        logger.info(
            "version_set_created",
            version_set_id=version_set_id,
            scheme=routing.scheme.value,
            discriminator=routing.discriminator,
        )
        return version_set

    def _attach_to_new_version_set(self, base: ApiResource, routing: VersionRouting) -> VersionSet:
        version_set_id = f"{base.api_id}-version-set"
        version_set = self._find_version_set(version_set_id)
        if version_set is None:
            with gateway_errors("versionSet", versionSet=version_set_id, api=base.api_id):
                version_set = self.gateway.create_version_set(
                    version_set_for(version_set_id, base.display_name, routing), timeout=self.timeout
                )
        else:
            ensure_same_scheme(version_set, routing.scheme)

        attached = base.model_copy(
            update={"version_set_id": version_set_id, "versioning_scheme": version_set.versioning_scheme}
        )
        with gateway_errors("versionSet", api=base.api_id, versionSet=version_set_id):
            self.gateway.create_or_update_api(base.api_id, attached, timeout=self.timeout)
        logger.info("api_attached_to_version_set", api_id=base.api_id, version_set_id=version_set_id)
        return version_set

    def _sync_operations(self, api_id: str, wanted: tuple[Operation, ...]) -> list[Operation]:
        current = self._list_operations(api_id)
        by_key = {op.key: op for op in current}

        desired: list[Operation] = []
        used: set[str] = set()
        for op in wanted:
            match = by_key.get(op.key)
            name = match.name if match is not None and match.name not in used else op.name
            if name in used:
                suffix = 2
                while f"{name}-{suffix}" in used:
                    suffix += 1
                name = f"{name}-{suffix}"
            used.add(name)
            desired.append(op if name == op.name else op.model_copy(update={"name": name}))

        with gateway_errors("api", api=api_id):
            if desired:
                self.gateway.import_operations(api_id, desired, timeout=self.timeout)

            stale = [op.name for op in current if op.name not in used]
            for name in stale:
                try:
                    self.gateway.delete_operation(api_id, name, timeout=self.timeout)
                except GatewayNotFound:
                    pass  # already gone

        logger.info("operations_synced", api_id=api_id, imported=len(desired), removed=len(stale))
        return self._list_operations(api_id)

    def _list_operations(self, api_id: str) -> list[Operation]:
        with gateway_errors("api", api=api_id):
            return self.gateway.list_operations(api_id, timeout=self.timeout)

    def _get_api(self, api_id: str) -> ApiResource:
        with gateway_errors("api", api=api_id):
            return self.gateway.get_api(api_id, timeout=self.timeout)

    def _find_api(self, api_id: str) -> ApiResource | None:
        try:
            return self._get_api(api_id)
        except NotFound:
            return None

    def _find_version_set(self, version_set_id: str) -> VersionSet | None:
        try:
            with gateway_errors("versionSet", versionSet=version_set_id):
                return self.gateway.get_version_set(version_set_id, timeout=self.timeout)
        except NotFound:
            return None
