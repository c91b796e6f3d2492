"""Protobuf service definition parser.

Reads the text form of a proto3 file and turns every ``rpc`` declaration
into an Operation. Imports are not followed; they are reported as warnings.
"""

import re

from apim_lifecycle.errors import ParseError

from .base import ContractFormat, Operation, ParsedContract, Parameter

SYNTAX = re.compile(r'^\s*syntax\s*=\s*"(proto\d+)"\s*;', re.MULTILINE)
EDITION = re.compile(r'^\s*edition\s*=\s*"(\d+)"\s*;', re.MULTILINE)
PACKAGE = re.compile(r"^\s*package\s+([\w.]+)\s*;", re.MULTILINE)
IMPORT = re.compile(r'^\s*import\s+(?:public\s+|weak\s+)?"([^"]+)"\s*;', re.MULTILINE)
MESSAGE = re.compile(r"\bmessage\s+(\w+)\s*\{")
SERVICE = re.compile(r"\bservice\s+(\w+)\s*\{")
RPC_START = re.compile(r"\brpc\b")
RPC = re.compile(
    r"rpc\s+(\w+)\s*\(\s*(stream\s+)?([\w.]+)\s*\)\s*returns\s*\(\s*(stream\s+)?([\w.]+)\s*\)\s*([;{])"
)
HTTP_RULE = re.compile(r'\b(get|put|post|delete|patch)\s*:\s*"([^"]*)"')
PATH_VAR = re.compile(r"\{([\w.]+)(?:=[^}]*)?\}")


def parse_protobuf(text: str) -> ParsedContract:
    """Parse a proto3 definition into a ParsedContract."""
    source = _strip_comments(text)
    _check_syntax(source)
    _check_braces(source)

    warnings: list[str] = []
    package_match = PACKAGE.search(source)
    package = package_match.group(1) if package_match else ""
    imports = IMPORT.findall(source)
    for imported in imports:
        warnings.append(f"unresolved import '{imported}'")

    messages = set(MESSAGE.findall(source))

    services = list(SERVICE.finditer(source))
    if not services:
        raise ParseError("proto definition declares no service", field="service")

    operations: list[Operation] = []
    rpc_names: set[str] = set()
    for service in services:
        service_name = service.group(1)
        body = _block(source, service.end() - 1)
        for op in _parse_service(service_name, body, package, messages, bool(imports), warnings):
            if op.rpc_name in rpc_names:
                qualified = f"{service_name}.{op.rpc_name}"
                warnings.append(f"rpc '{op.rpc_name}' is declared by several services, using '{qualified}'")
                op = op.model_copy(update={"rpc_name": qualified, "name": f"{service_name}-{op.name}"})
            rpc_names.add(op.rpc_name)
            operations.append(op)

    names = [s.group(1) for s in services]
    return ParsedContract(
        title=names[0] if len(names) == 1 else (package or names[0]),
        description=f"gRPC service{'s' if len(names) > 1 else ''}: {', '.join(names)}",
        source_format=ContractFormat.PROTOBUF,
        operations=tuple(operations),
        warnings=tuple(warnings),
    )


def _parse_service(
    service_name: str, body: str, package: str, messages: set[str], has_imports: bool, warnings: list[str]
) -> list[Operation]:
    operations = []
    masked = _mask_strings(body)
    pos = 0
    while True:
        start = RPC_START.search(masked, pos)
        if start is None:
            break
        m = RPC.match(body, start.start())
        if m is None:
            snippet = body[start.start():].split("\n", 1)[0].strip()
            raise ParseError(f"malformed rpc declaration '{snippet}'", field=f"service.{service_name}")
        pos = m.end()

        rpc, client_stream, request, server_stream, response, terminator = m.groups()
        where = f"service.{service_name}.{rpc}"
        for message in (request, response):
            _check_message(message, package, messages, has_imports, where, warnings)

        method_path = f"/{package + '.' if package else ''}{service_name}/{rpc}"
        method, url_template = "POST", method_path
        if terminator == "{":
            options = _block(body, m.end() - 1)
            pos = m.end() + len(options) + 1
            rule = HTTP_RULE.search(options)
            if rule:
                method, url_template = rule.group(1).upper(), rule.group(2)

        params = [
            Parameter(name=var, location="path", required=True)
            for var in PATH_VAR.findall(url_template)
        ]
        params.append(Parameter(name="body", location="body", required=True, param_type=request))

        signature = (
            f"{rpc}({'stream ' if client_stream else ''}{request}) "
            f"returns ({'stream ' if server_stream else ''}{response})"
        )
        operations.append(
            Operation(
                name=rpc,
                display_name=rpc,
                method=method,
                url_template=url_template,
                rpc_name=rpc,
                service_method_path=method_path,
                request_message=request,
                response_message=response,
                client_streaming=bool(client_stream),
                server_streaming=bool(server_stream),
                description=signature,
                parameters=tuple(params),
            )
        )
    return operations


def _check_message(
    message: str, package: str, messages: set[str], has_imports: bool, where: str, warnings: list[str]
) -> None:
    name = message.lstrip(".")
    if package and name.startswith(package + "."):
        name = name[len(package) + 1:]
    if name.split(".")[-1] in messages:
        return
    if has_imports:
        warnings.append(f"message '{message}' used by {where} is assumed to come from an import")
        return
    raise ParseError(f"message '{message}' is referenced but not defined", field=where)


def _check_syntax(source: str) -> None:
    if EDITION.search(source):
        return
    m = SYNTAX.search(source)
    if m is None:
        raise ParseError("proto definition must declare syntax = \"proto3\"", field="syntax")
    if int(m.group(1)[len("proto"):]) < 3:
        raise ParseError(f"{m.group(1)} is not supported, proto3 or later required", field="syntax")


def _check_braces(source: str) -> None:
    depth = 0
    for ch in _outside_strings(source):
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth < 0:
                raise ParseError("unbalanced braces in proto definition")
    if depth != 0:
        raise ParseError("unbalanced braces in proto definition")


def _outside_strings(source: str):
    """Yield characters that are not inside string literals."""
    for ch, in_string in _scan(source):
        if not in_string:
            yield ch


def _mask_strings(source: str) -> str:
    """Blank out string literal contents, keeping offsets intact."""
    return "".join(" " if in_string else ch for ch, in_string in _scan(source))


def _scan(source: str):
    quote = None
    escaped = False
    for ch in source:
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            yield ch, True
            continue
        if ch in "\"'":
            quote = ch
            yield ch, True
            continue
        yield ch, False


def _block(source: str, open_index: int) -> str:
    """Return the text between the brace at open_index and its match."""
    depth = 0
    quote = None
    for i in range(open_index, len(source)):
        ch = source[i]
        if quote:
            if ch == quote and source[i - 1] != "\\":
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return source[open_index + 1:i]
    raise ParseError("unbalanced braces in proto definition")


def _strip_comments(text: str) -> str:
    out = []
    i, n = 0, len(text)
    quote = None
    while i < n:
        ch = text[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
        elif ch in "\"'":
            quote = ch
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
            out.append(" ")
        else:
            out.append(ch)
            i += 1
    return "".join(out)
