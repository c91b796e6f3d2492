"""Auto-detect contract format."""

import json
import re

import yaml

from .base import ContractFormat

PROTO_MARKERS = re.compile(r'^\s*(syntax|edition)\s*=\s*"[^"]+"\s*;|^\s*service\s+\w+\s*\{', re.MULTILINE)


def detect_format(text: str) -> ContractFormat | None:
    """Detect the format of a contract document.

    Returns None when the text looks like neither OpenAPI nor Protobuf.
    """
    if PROTO_MARKERS.search(text):
        return ContractFormat.PROTOBUF

    # Try YAML/JSON parsing
    try:
        data = yaml.safe_load(text)
        if isinstance(data, dict) and ("openapi" in data or "swagger" in data):
            return ContractFormat.OPENAPI
    except yaml.YAMLError:
        pass

    # Try JSON specifically (for files not parseable as YAML)
    try:
        data = json.loads(text)
        if isinstance(data, dict) and ("openapi" in data or "swagger" in data):
            return ContractFormat.OPENAPI
    except (json.JSONDecodeError, ValueError):
        pass

    return None
