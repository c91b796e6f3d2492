"""OpenAPI / Swagger document parser.

Parses OpenAPI 3.x and Swagger 2.0 documents (YAML or JSON) into a
ParsedContract.
"""

import re
from urllib.parse import urlparse

import yaml

from apim_lifecycle.errors import ParseError

from .base import ContractFormat, Operation, ParsedContract, Parameter

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")

# Path item keys that carry no operation of their own
PATH_ITEM_FIELDS = {"parameters", "summary", "description", "servers", "$ref"}

LOCATIONS = {"path": "path", "query": "query", "header": "header", "body": "body", "formData": "body"}

CONSTRAINT_KEYS = ("minimum", "maximum", "minLength", "maxLength", "pattern", "enum", "format")


def parse_openapi(text: str) -> ParsedContract:
    """Parse an OpenAPI/Swagger document into a ParsedContract."""
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(f"contract is not valid YAML or JSON: {e}") from e

    if not isinstance(doc, dict):
        raise ParseError("contract must be a mapping at the top level")

    _check_version(doc)

    if "paths" not in doc:
        raise ParseError("contract declares no 'paths' section", field="paths")
    paths = doc["paths"] or {}
    if not isinstance(paths, dict):
        raise ParseError("'paths' must be a mapping", field="paths")

    warnings: list[str] = []
    operations: list[Operation] = []
    seen_names: set[str] = set()

    for path, item in paths.items():
        if item is None:
            continue
        if not isinstance(item, dict):
            raise ParseError(f"path item '{path}' must be a mapping", field=f"paths.{path}")
        if "$ref" in item:
            item = {**(_resolve(doc, item["$ref"], f"paths.{path}", warnings) or {}), **item}

        path_params = _expect_list(item.get("parameters"), f"paths.{path}.parameters")

        for key, operation in item.items():
            if key in HTTP_METHODS:
                where = f"paths.{path}.{key}"
                op = _parse_operation(doc, str(path), key, _expect_mapping(operation, where), path_params, warnings)
                if op.name in seen_names:
                    unique = _unique_name(op.name, seen_names)
                    warnings.append(f"duplicate operation name '{op.name}' renamed to '{unique}'")
                    op = op.model_copy(update={"name": unique})
                seen_names.add(op.name)
                operations.append(op)
            elif key in PATH_ITEM_FIELDS or str(key).startswith("x-"):
                continue
            else:
                warnings.append(f"dropped unsupported key '{key}' under path '{path}'")

    info = _expect_mapping(doc.get("info"), "info")
    title = info.get("title")
    if not title:
        warnings.append("contract has no info.title")
        title = "Untitled API"

    service_url = _server_url(doc)
    return ParsedContract(
        title=str(title),
        description=str(info.get("description") or ""),
        version=str(info["version"]) if info.get("version") is not None else None,
        source_format=ContractFormat.OPENAPI,
        base_service_url=service_url,
        base_path=_base_path(service_url),
        operations=tuple(operations),
        warnings=tuple(warnings),
    )


def _check_version(doc: dict) -> None:
    if "openapi" in doc:
        if not str(doc["openapi"]).startswith("3."):
            raise ParseError(f"unsupported OpenAPI version '{doc['openapi']}'", field="openapi")
    elif "swagger" in doc:
        if not str(doc["swagger"]).startswith("2"):
            raise ParseError(f"unsupported Swagger version '{doc['swagger']}'", field="swagger")
    else:
        raise ParseError("contract does not declare an 'openapi' or 'swagger' version", field="openapi")


def _parse_operation(
    doc: dict, path: str, method: str, operation: dict, path_params: list, warnings: list[str]
) -> Operation:
    where = f"paths.{path}.{method}"

    # Method-level parameters override path-level ones with the same name
    merged: dict[str, Parameter] = {}
    for raw in list(path_params) + _expect_list(operation.get("parameters"), f"{where}.parameters"):
        param = _parse_parameter(doc, raw, where, warnings)
        if param is not None:
            merged[param.name] = param

    body = _parse_request_body(doc, operation.get("requestBody"), where, warnings)
    if body is not None:
        merged[body.name] = body

    _check_responses(doc, _expect_mapping(operation.get("responses"), f"{where}.responses"), where, warnings)

    operation_id = str(operation["operationId"]) if operation.get("operationId") else None
    summary = str(operation.get("summary") or "")
    return Operation(
        name=operation_id or _slug(f"{method}-{path}"),
        display_name=summary or operation_id or f"{method.upper()} {path}",
        method=method.upper(),
        url_template=path,
        description=str(operation.get("description") or summary),
        parameters=tuple(merged.values()),
    )


def _parse_parameter(doc: dict, raw: dict, where: str, warnings: list[str]) -> Parameter | None:
    raw = _expect_mapping(raw, f"{where}.parameters")
    if "$ref" in raw:
        raw = _resolve(doc, raw["$ref"], where, warnings)
        if raw is None:
            return None

    name = raw.get("name")
    if not name:
        raise ParseError("parameter without a name", field=where)

    location = LOCATIONS.get(str(raw.get("in", "query")))
    if location is None:
        warnings.append(f"dropped {raw.get('in')} parameter '{name}' in {where}")
        return None

    # Swagger 2 keeps type information on the parameter itself
    schema = _expect_mapping(raw.get("schema"), f"{where}.parameters.{name}.schema") or raw
    if "$ref" in schema:
        _resolve(doc, schema["$ref"], where, warnings)
    constraints = {key: schema[key] for key in CONSTRAINT_KEYS if key in schema}

    return Parameter(
        name=str(name),
        location=location,
        required=bool(raw.get("required", location == "path")),
        param_type=str(schema.get("type") or _ref_name(schema) or "string"),
        description=str(raw.get("description") or ""),
        example=raw.get("example", schema.get("example")),
        constraints=constraints,
    )


def _parse_request_body(doc: dict, body: dict | None, where: str, warnings: list[str]) -> Parameter | None:
    body = _expect_mapping(body, f"{where}.requestBody")
    if not body:
        return None
    if "$ref" in body:
        body = _resolve(doc, body["$ref"], where, warnings)
        if body is None:
            return None

    schema: dict = {}
    content = _expect_mapping(body.get("content"), f"{where}.requestBody.content")
    for content_type in ("application/json", "multipart/form-data"):
        if content_type in content:
            schema = _expect_mapping(content[content_type], f"{where}.requestBody.content").get("schema") or {}
            break
    else:
        # Fallback: first available schema
        for ct_data in content.values():
            schema = _expect_mapping(ct_data, f"{where}.requestBody.content").get("schema") or {}
            break

    if "$ref" in schema:
        _resolve(doc, schema["$ref"], f"{where}.requestBody", warnings)

    return Parameter(
        name="body",
        location="body",
        required=bool(body.get("required", False)),
        param_type=schema.get("type") or _ref_name(schema) or "object",
        description=body.get("description", "") or "",
        example=schema.get("example"),
    )


def _check_responses(doc: dict, responses: dict, where: str, warnings: list[str]) -> None:
    """Fail on local references to response schemas that are not defined."""
    for status_code, resp in responses.items():
        at = f"{where}.responses.{status_code}"
        if not isinstance(resp, dict):
            continue
        if "$ref" in resp:
            resp = _resolve(doc, resp["$ref"], at, warnings) or {}
        schemas = [resp.get("schema")]
        content = _expect_mapping(resp.get("content"), f"{at}.content")
        schemas.extend(_expect_mapping(ct, f"{at}.content").get("schema") for ct in content.values())
        for schema in schemas:
            if isinstance(schema, dict) and "$ref" in schema:
                _resolve(doc, schema["$ref"], at, warnings)


def _resolve(doc: dict, ref: str, where: str, warnings: list[str]) -> dict | None:
    """Follow a JSON pointer reference inside the document.

    External references cannot be followed without I/O; they are recorded
    as warnings and resolve to None.
    """
    ref = str(ref)
    if not ref.startswith("#/"):
        warnings.append(f"unresolved external reference '{ref}' in {where}")
        return None

    node = doc
    for token in ref[2:].split("/"):
        token = token.replace("~1", "/").replace("~0", "~")
        if not isinstance(node, dict) or token not in node:
            raise ParseError(f"reference '{ref}' is not defined", field=where)
        node = node[token]
    if not isinstance(node, dict):
        raise ParseError(f"reference '{ref}' does not point to an object", field=where)
    return node


def _ref_name(schema: dict) -> str | None:
    ref = schema.get("$ref")
    return str(ref).rsplit("/", 1)[-1] if ref else None


def _server_url(doc: dict) -> str | None:
    servers = _expect_list(doc.get("servers"), "servers")
    if servers and isinstance(servers[0], dict) and servers[0].get("url"):
        url = str(servers[0]["url"])
        for name, var in _expect_mapping(servers[0].get("variables"), "servers.variables").items():
            default = _expect_mapping(var, f"servers.variables.{name}").get("default", "")
            url = url.replace("{" + str(name) + "}", str(default))
        return url

    if doc.get("host"):
        scheme = (doc.get("schemes") or ["https"])[0]
        return f"{scheme}://{doc['host']}{doc.get('basePath', '')}"
    if doc.get("basePath"):
        return doc["basePath"]
    return None


def _base_path(url: str | None) -> str | None:
    if not url:
        return None
    return urlparse(url).path.strip("/") or None


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def _unique_name(name: str, taken: set[str]) -> str:
    n = 2
    while f"{name}-{n}" in taken:
        n += 1
    return f"{name}-{n}"


def _expect_mapping(node, where: str) -> dict:
    if node is None:
        return {}
    if not isinstance(node, dict):
        raise ParseError(f"'{where}' must be a mapping", field=where)
    return node


def _expect_list(node, where: str) -> list:
    if node is None:
        return []
    if not isinstance(node, list):
        raise ParseError(f"'{where}' must be a list", field=where)
    return node
