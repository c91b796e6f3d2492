"""Entry points for turning raw contract text into a ParsedContract."""

from pathlib import Path

from apim_lifecycle.errors import ParseError

from .base import ContractFormat, ParsedContract
from .detect import detect_format
from .openapi import parse_openapi
from .protobuf import parse_protobuf


def parse_contract(raw: str, fmt: ContractFormat | str) -> ParsedContract:
    """Parse contract text declared to be in the given format."""
    if not raw or not raw.strip():
        raise ParseError("contract is empty", field="contract")

    try:
        fmt = ContractFormat(fmt)
    except ValueError:
        raise ParseError(f"unsupported contract format '{fmt}'", field="format") from None
    if fmt is ContractFormat.OPENAPI:
        return parse_openapi(raw)
    return parse_protobuf(raw)


def load_contract(file_path: Path, fmt: str = "auto") -> ParsedContract:
    """Read and parse a contract file, detecting its format when asked."""
    text = file_path.read_text(encoding="utf-8")
    if fmt == "auto":
        detected = detect_format(text)
        if detected is None:
            raise ParseError(f"cannot tell whether {file_path.name} is OpenAPI or Protobuf", field="format")
        return parse_contract(text, detected)
    return parse_contract(text, fmt)
