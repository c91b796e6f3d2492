"""GatewayClient over the Azure API Management REST API.

Speaks the ARM resource API with a bearer token supplied by the caller;
acquiring that token is left to the embedding environment.
"""

import time

import requests

from apim_lifecycle.contract.base import Operation, Parameter

from .base import (
    ApiResource,
    ApiRevision,
    Backend,
    BackendTls,
    GatewayClient,
    Product,
    Subscription,
    VersioningScheme,
    VersionSet,
)
from .errors import (
    GatewayConflict,
    GatewayError,
    GatewayNotFound,
    GatewayTimeout,
    GatewayUnauthorized,
    GatewayUnavailable,
)

DEFAULT_ENDPOINT = "https://management.azure.com"
DEFAULT_API_VERSION = "2022-08-01"


class RestGateway(GatewayClient):
    """Management-plane client built on a requests.Session."""

    def __init__(
        self,
        subscription_id: str,
        resource_group: str,
        service_name: str,
        access_token: str,
        endpoint: str = DEFAULT_ENDPOINT,
        api_version: str = DEFAULT_API_VERSION,
        session: requests.Session | None = None,
    ):
        self.resource_id = (
            f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.ApiManagement/service/{service_name}"
        )
        self.base_url = endpoint.rstrip("/") + self.resource_id
        self.api_version = api_version
        self.session = session or requests.Session()
        self.session.headers["Authorization"] = f"Bearer {access_token}"
        self.session.headers["Content-Type"] = "application/json"

    @classmethod
    def from_settings(cls, settings) -> "RestGateway":
        settings.require_remote()
        return cls(
            subscription_id=settings.subscription_id,
            resource_group=settings.resource_group,
            service_name=settings.service_name,
            access_token=settings.access_token.get_secret_value(),
            endpoint=settings.management_endpoint,
            api_version=settings.api_version,
        )

    # --- APIs ---

    def get_api(self, api_id: str, *, timeout: float) -> ApiResource:
        return _to_api(self._request("GET", f"/apis/{api_id}", timeout=timeout))

    def list_apis(self, *, timeout: float) -> list[ApiResource]:
        return [_to_api(item) for item in self._list("/apis", timeout=timeout) if ";rev=" not in item["name"]]

    def create_or_update_api(self, api_id: str, definition: ApiResource, *, timeout: float) -> ApiResource:
        properties = {
            "displayName": definition.display_name,
            "description": definition.description,
            "path": definition.path,
            "serviceUrl": definition.service_url,
            "protocols": definition.protocols,
            "subscriptionRequired": definition.subscription_required,
            "type": "http",
        }
        if definition.version_set_id:
            properties["apiVersionSetId"] = f"{self.resource_id}/apiVersionSets/{definition.version_set_id}"
            properties["apiVersion"] = definition.api_version or ""
        body = self._request("PUT", f"/apis/{api_id}", timeout=timeout, json={"properties": properties})
        api = _to_api(body) if body else definition
        if api.versioning_scheme is None and definition.versioning_scheme is not None:
            api = api.model_copy(update={"versioning_scheme": definition.versioning_scheme})
        return api

    def list_operations(self, api_id: str, *, timeout: float) -> list[Operation]:
        return [_to_operation(item) for item in self._list(f"/apis/{api_id}/operations", timeout=timeout)]

    def import_operations(self, api_id: str, operations: list[Operation], *, timeout: float) -> None:
        for op in operations:
            self._request(
                "PUT",
                f"/apis/{api_id}/operations/{op.name}",
                timeout=timeout,
                json={"properties": _operation_properties(op)},
            )

    def delete_operation(self, api_id: str, operation_name: str, *, timeout: float) -> None:
        self._request(
            "DELETE", f"/apis/{api_id}/operations/{operation_name}", timeout=timeout, headers={"If-Match": "*"}
        )

    # --- Version sets and revisions ---

    def get_version_set(self, version_set_id: str, *, timeout: float) -> VersionSet:
        return _to_version_set(self._request("GET", f"/apiVersionSets/{version_set_id}", timeout=timeout))

    def create_version_set(self, definition: VersionSet, *, timeout: float) -> VersionSet:
        properties = {
            "displayName": definition.display_name,
            "description": definition.description,
            "versioningScheme": definition.versioning_scheme.value,
            "versionQueryName": definition.version_query_name,
            "versionHeaderName": definition.version_header_name,
        }
        body = self._request(
            "PUT", f"/apiVersionSets/{definition.version_set_id}", timeout=timeout, json={"properties": properties}
        )
        return _to_version_set(body) if body else definition

    def list_revisions(self, api_id: str, *, timeout: float) -> list[ApiRevision]:
        revisions = [_to_revision(api_id, item) for item in self._list(f"/apis/{api_id}/revisions", timeout=timeout)]
        return sorted(revisions, key=lambda r: r.revision_number)

    def create_revision(self, api_id: str, definition: ApiRevision, *, timeout: float) -> ApiRevision:
        source = f"/apis/{api_id}"
        if definition.source_revision:
            source += f";rev={definition.source_revision}"
        properties = {
            "sourceApiId": self.resource_id + source,
            "apiRevisionDescription": definition.description,
        }
        self._request(
            "PUT",
            f"/apis/{api_id};rev={definition.revision_number}",
            timeout=timeout,
            json={"properties": properties},
        )
        return definition.model_copy(update={"is_current": False})

    def release_revision(self, api_id: str, revision_number: int, *, timeout: float) -> ApiRevision:
        properties = {
            "apiId": f"{self.resource_id}/apis/{api_id};rev={revision_number}",
            "notes": f"Release revision {revision_number}",
        }
        self._request(
            "PUT", f"/apis/{api_id}/releases/rev-{revision_number}", timeout=timeout, json={"properties": properties}
        )
        for revision in self.list_revisions(api_id, timeout=timeout):
            if revision.revision_number == revision_number:
                return revision
        raise GatewayNotFound(f"revision {revision_number} of '{api_id}' not found after release", 404)

    # --- Products and subscriptions ---

    def get_product(self, product_id: str, *, timeout: float) -> Product:
        return _to_product(self._request("GET", f"/products/{product_id}", timeout=timeout))

    def list_products(self, *, timeout: float) -> list[Product]:
        return [_to_product(item) for item in self._list("/products", timeout=timeout)]

    def create_or_update_product(self, product_id: str, definition: Product, *, timeout: float) -> Product:
        properties = {
            "displayName": definition.display_name,
            "description": definition.description,
            "state": definition.state.value,
            "subscriptionRequired": definition.subscription_required,
        }
        # approvalRequired may only be sent for products that require subscriptions
        if definition.subscription_required:
            properties["approvalRequired"] = definition.approval_required
        body = self._request("PUT", f"/products/{product_id}", timeout=timeout, json={"properties": properties})
        return _to_product(body) if body else definition

    def associate_api_to_product(self, product_id: str, api_id: str, *, timeout: float) -> None:
        self._request("PUT", f"/products/{product_id}/apis/{api_id}", timeout=timeout)

    def list_api_products(self, api_id: str, *, timeout: float) -> list[Product]:
        return [_to_product(item) for item in self._list(f"/apis/{api_id}/products", timeout=timeout)]

    def get_subscription(self, subscription_id: str, *, timeout: float) -> Subscription:
        body = self._request("GET", f"/subscriptions/{subscription_id}", timeout=timeout)
        return self._with_secrets(_to_subscription(body), timeout=timeout)

    def list_subscriptions(self, *, timeout: float) -> list[Subscription]:
        return [_to_subscription(item) for item in self._list("/subscriptions", timeout=timeout)]

    def create_or_update_subscription(
        self, subscription_id: str, definition: Subscription, *, timeout: float
    ) -> Subscription:
        properties = {
            "scope": definition.scope,
            "displayName": definition.display_name,
            "state": definition.state.value,
        }
        if definition.owner_id:
            properties["ownerId"] = f"/users/{definition.owner_id}"
        if definition.primary_key:
            properties["primaryKey"] = definition.primary_key.get_secret_value()
        if definition.secondary_key:
            properties["secondaryKey"] = definition.secondary_key.get_secret_value()
        body = self._request(
            "PUT", f"/subscriptions/{subscription_id}", timeout=timeout, json={"properties": properties}
        )
        stored = _to_subscription(body) if body else definition
        return self._with_secrets(stored, timeout=timeout)

    # --- Backends ---

    def list_backends(self, *, timeout: float) -> list[Backend]:
        return [_to_backend(item) for item in self._list("/backends", timeout=timeout)]

    def create_or_update_backend(self, name: str, definition: Backend, *, timeout: float) -> Backend:
        properties = {
            "url": definition.url,
            "protocol": definition.protocol.value,
            "title": definition.title,
            "description": definition.description,
        }
        if definition.credentials:
            properties["credentials"] = definition.credentials
        if definition.tls:
            properties["tls"] = {
                "validateCertificateChain": definition.tls.validate_certificate_chain,
                "validateCertificateName": definition.tls.validate_certificate_name,
            }
        body = self._request("PUT", f"/backends/{name}", timeout=timeout, json={"properties": properties})
        return _to_backend(body) if body else definition

    # --- Transport ---

    def _with_secrets(self, subscription: Subscription, *, timeout: float) -> Subscription:
        secrets = self._request("POST", f"/subscriptions/{subscription.subscription_id}/listSecrets", timeout=timeout)
        return Subscription.model_validate(
            {
                **subscription.model_dump(exclude={"primary_key", "secondary_key"}),
                "primary_key": (secrets or {}).get("primaryKey"),
                "secondary_key": (secrets or {}).get("secondaryKey"),
            }
        )

    def _list(self, path: str, *, timeout: float) -> list[dict]:
        items: list[dict] = []
        body = self._request("GET", path, timeout=timeout)
        while body:
            items.extend(body.get("value", []))
            next_link = body.get("nextLink")
            body = self._request("GET", next_link, timeout=timeout, absolute=True) if next_link else None
        return items

    def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        json: dict | None = None,
        headers: dict | None = None,
        absolute: bool = False,
    ) -> dict | None:
        url = path if absolute else self.base_url + path
        params = None if absolute else {"api-version": self.api_version}
        deadline = time.monotonic() + timeout
        response = self._send(method, url, timeout=timeout, params=params, json=json, headers=headers)

        # Long-running operations answer 202 with a Location to poll
        while response.status_code == 202 and response.headers.get("Location"):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise GatewayTimeout(f"{method} {path} did not complete in {timeout}s")
            time.sleep(min(float(response.headers.get("Retry-After", 1)), remaining))
            response = self._send("GET", response.headers["Location"], timeout=max(deadline - time.monotonic(), 0.1))

        _raise_for_status(response, method, path)
        if not response.content:
            return None
        return response.json()

    def _send(self, method: str, url: str, *, timeout: float, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=timeout, **kwargs)
        except requests.Timeout as e:
            raise GatewayTimeout(f"{method} {url} timed out after {timeout}s") from e
        except requests.RequestException as e:
            raise GatewayUnavailable(f"{method} {url} failed: {e}") from e


def _raise_for_status(response: requests.Response, method: str, path: str) -> None:
    status = response.status_code
    if status < 400:
        return
    message = f"{method} {path}: {_error_message(response)}"
    if status == 404:
        raise GatewayNotFound(message, status)
    if status in (401, 403):
        raise GatewayUnauthorized(message, status)
    if status == 429 or status >= 500:
        raise GatewayUnavailable(message, status)
    if status in (400, 409, 412, 422):
        raise GatewayConflict(message, status)
    raise GatewayError(message, status)


def _error_message(response: requests.Response) -> str:
    try:
        return response.json().get("error", {}).get("message", response.reason)
    except ValueError:
        return response.reason or str(response.status_code)


def _short_id(resource_id: str | None) -> str | None:
    return resource_id.rsplit("/", 1)[-1] if resource_id else None


def _to_api(item: dict) -> ApiResource:
    props = item.get("properties", {})
    version_set = props.get("apiVersionSet") or {}
    scheme = version_set.get("versioningScheme")
    return ApiResource(
        api_id=item["name"],
        display_name=props.get("displayName", ""),
        description=props.get("description") or "",
        path=props.get("path", ""),
        service_url=props.get("serviceUrl"),
        protocols=props.get("protocols") or [],
        subscription_required=props.get("subscriptionRequired", True),
        api_type=props.get("type") or "http",
        version_set_id=_short_id(props.get("apiVersionSetId")),
        api_version=props.get("apiVersion") or None,
        versioning_scheme=VersioningScheme(scheme) if scheme else None,
    )


def _to_version_set(item: dict) -> VersionSet:
    props = item.get("properties", {})
    return VersionSet(
        version_set_id=item["name"],
        display_name=props.get("displayName", ""),
        description=props.get("description") or "",
        versioning_scheme=VersioningScheme(props.get("versioningScheme", "Segment")),
        version_query_name=props.get("versionQueryName"),
        version_header_name=props.get("versionHeaderName"),
    )


def _to_revision(api_id: str, item: dict) -> ApiRevision:
    fields = {
        "api_id": api_id,
        "revision_number": int(item.get("apiRevision", 1)),
        "description": item.get("description") or "",
        "is_current": bool(item.get("isCurrent", False)),
    }
    if item.get("createdDateTime"):
        fields["created_at"] = item["createdDateTime"]
    return ApiRevision.model_validate(fields)


def _to_product(item: dict) -> Product:
    props = item.get("properties", {})
    return Product(
        product_id=item["name"],
        display_name=props.get("displayName", ""),
        description=props.get("description") or "",
        state=props.get("state", "notPublished"),
        subscription_required=props.get("subscriptionRequired", False),
        approval_required=props.get("approvalRequired") or False,
    )


def _to_subscription(item: dict) -> Subscription:
    props = item.get("properties", {})
    return Subscription(
        subscription_id=item["name"],
        display_name=props.get("displayName") or item["name"],
        product_id=(props.get("scope") or "").rstrip("/").rsplit("/", 1)[-1],
        state=props.get("state", "submitted"),
        owner_id=_short_id(props.get("ownerId")),
    )


def _to_backend(item: dict) -> Backend:
    props = item.get("properties", {})
    tls = props.get("tls")
    return Backend(
        name=item["name"],
        url=props.get("url", ""),
        protocol=props.get("protocol", "http"),
        title=props.get("title") or "",
        description=props.get("description") or "",
        credentials=props.get("credentials"),
        tls=BackendTls(
            validate_certificate_chain=tls.get("validateCertificateChain", True),
            validate_certificate_name=tls.get("validateCertificateName", True),
        )
        if tls
        else None,
    )


def _operation_properties(op: Operation) -> dict:
    def describe(p: Parameter) -> dict:
        entry = {"name": p.name, "type": p.param_type, "required": p.required, "description": p.description}
        if p.example is not None:
            entry["defaultValue"] = str(p.example)
        return entry

    request: dict = {
        "queryParameters": [describe(p) for p in op.parameters if p.location == "query"],
        "headers": [describe(p) for p in op.parameters if p.location == "header"],
    }
    body = next((p for p in op.parameters if p.location == "body"), None)
    if body is not None:
        request["description"] = body.description or body.param_type
        request["representations"] = [{"contentType": "application/json", "typeName": body.param_type}]

    return {
        "displayName": op.display_name,
        "method": op.method,
        "urlTemplate": op.url_template,
        "description": op.description,
        "templateParameters": [describe(p) for p in op.parameters if p.location == "path"],
        "request": request,
    }


def _to_operation(item: dict) -> Operation:
    props = item.get("properties", {})
    request = props.get("request") or {}

    def params(entries: list | None, location: str) -> list[Parameter]:
        return [
            Parameter(
                name=e["name"],
                location=location,
                required=bool(e.get("required", False)),
                param_type=e.get("type") or "string",
                description=e.get("description") or "",
            )
            for e in entries or []
        ]

    parameters = (
        params(props.get("templateParameters"), "path")
        + params(request.get("queryParameters"), "query")
        + params(request.get("headers"), "header")
    )
    return Operation(
        name=item["name"],
        display_name=props.get("displayName") or item["name"],
        method=props.get("method", "GET"),
        url_template=props.get("urlTemplate", "/"),
        description=props.get("description") or "",
        parameters=tuple(parameters),
    )
