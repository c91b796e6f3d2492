"""Format-agnostic contract models.

The OpenAPI and Protobuf parsers both convert their input into these
models for the lifecycle manager.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class ContractFormat(str, Enum):
    OPENAPI = "openapi"
    PROTOBUF = "protobuf"


class Parameter(BaseModel):
    """A single operation parameter (path, query, header, or body)."""

    model_config = ConfigDict(frozen=True)

    name: str
    location: str  # path / query / header / body
    required: bool = False
    param_type: str = "string"
    description: str = ""
    example: Any = None
    constraints: dict = {}  # minimum, maximum, pattern, enum, etc.


class Operation(BaseModel):
    """One HTTP operation or gRPC method exposed by an API."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    method: str = "POST"  # GET / POST / PUT / DELETE / PATCH ...
    url_template: str = "/"
    rpc_name: str | None = None
    service_method_path: str | None = None  # /package.Service/Method
    request_message: str | None = None
    response_message: str | None = None
    client_streaming: bool = False
    server_streaming: bool = False
    description: str = ""
    parameters: tuple[Parameter, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        """Identity used to match this operation against a deployed one."""
        if self.rpc_name:
            return ("rpc", self.rpc_name)
        return (self.method.upper(), self.url_template)


class ParsedContract(BaseModel):
    """An API contract normalized into metadata plus operations."""

    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    version: str | None = None
    source_format: ContractFormat
    base_service_url: str | None = None
    base_path: str | None = None
    operations: tuple[Operation, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def operation_count(self) -> int:
        return len(self.operations)
