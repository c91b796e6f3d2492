"""Version strategy resolution.

Turns a versioning scheme selection into the concrete routing
discriminator for one version and checks it against the version set.
"""

import re

from pydantic import BaseModel

from apim_lifecycle.errors import SchemeConflict, ValidationError
from apim_lifecycle.gateway.base import VersioningScheme, VersionSet
from apim_lifecycle.log import get_logger

logger = get_logger(__name__)

DEFAULT_QUERY_NAME = "version"
DEFAULT_HEADER_NAME = "Api-Version"

VERSION_ID = re.compile(r"[A-Za-z0-9._-]{1,80}")
QUERY_NAME = re.compile(r"[A-Za-z0-9._~-]+")
HEADER_NAME = re.compile(r"[!#$%&'*+.^_`|~0-9A-Za-z-]+")


class VersionRouting(BaseModel):
    """How callers select one version of an API at request time."""

    scheme: VersioningScheme
    version_id: str
    query_name: str | None = None
    header_name: str | None = None

    def apply_to_path(self, base_path: str) -> str:
        if self.scheme is VersioningScheme.SEGMENT:
            return f"{base_path}/{self.version_id}" if base_path else self.version_id
        return base_path

    @property
    def discriminator(self) -> str:
        if self.scheme is VersioningScheme.QUERY:
            return f"{self.query_name}={self.version_id}"
        if self.scheme is VersioningScheme.HEADER:
            return f"{self.header_name}: {self.version_id}"
        return f"/{self.version_id}"


class VersionStrategyResolver:
    """Validates versioning parameters and builds VersionRouting values."""

    def __init__(
        self,
        reserved_query_names=("subscription-key",),
        reserved_header_names=("Ocp-Apim-Subscription-Key",),
    ):
        self.reserved_query_names = {n.lower() for n in reserved_query_names}
        self.reserved_header_names = {n.lower() for n in reserved_header_names}

    @classmethod
    def from_settings(cls, settings) -> "VersionStrategyResolver":
        return cls(settings.reserved_query_names, settings.reserved_header_names)

    def resolve(
        self,
        scheme: VersioningScheme | str,
        version_id: str,
        query_name: str | None = None,
        header_name: str | None = None,
    ) -> VersionRouting:
        try:
            scheme = VersioningScheme(scheme)
        except ValueError:
            raise ValidationError(f"unknown versioning scheme '{scheme}'", field="versioningScheme") from None

        if not version_id or not version_id.strip():
            raise ValidationError("version id must not be empty", field="versionId")
        if not VERSION_ID.fullmatch(version_id):
            raise ValidationError(f"invalid version id '{version_id}'", field="versionId")

        if scheme is VersioningScheme.SEGMENT:
            if query_name or header_name:
                logger.warning(
                    "segment_versioning_ignores_names",
                    version_id=version_id,
                    query_name=query_name,
                    header_name=header_name,
                )
            return VersionRouting(scheme=scheme, version_id=version_id)

        if scheme is VersioningScheme.QUERY:
            name = DEFAULT_QUERY_NAME if query_name is None else query_name
            self._check_name(name, QUERY_NAME, self.reserved_query_names, "versionQueryName")
            return VersionRouting(scheme=scheme, version_id=version_id, query_name=name)

        name = DEFAULT_HEADER_NAME if header_name is None else header_name
        self._check_name(name, HEADER_NAME, self.reserved_header_names, "versionHeaderName")
        return VersionRouting(scheme=scheme, version_id=version_id, header_name=name)

    @staticmethod
    def _check_name(name: str, pattern: re.Pattern, reserved: set[str], field: str) -> None:
        if not name or not name.strip():
            raise ValidationError("discriminator name must not be empty", field=field)
        if not pattern.fullmatch(name):
            raise ValidationError(f"'{name}' is not a valid discriminator name", field=field)
        if name.lower() in reserved:
            raise ValidationError(f"'{name}' is reserved by the gateway", field=field)


def ensure_same_scheme(version_set: VersionSet, scheme: VersioningScheme) -> None:
    """Every version in a set must be routed the same way."""
    if version_set.versioning_scheme is not scheme:
        raise SchemeConflict(version_set.version_set_id, version_set.versioning_scheme.value, scheme.value)


def version_set_for(version_set_id: str, display_name: str, routing: VersionRouting) -> VersionSet:
    return VersionSet(
        version_set_id=version_set_id,
        display_name=f"{display_name} Version Set",
        description=f"Version set for {display_name}",
        versioning_scheme=routing.scheme,
        version_query_name=routing.query_name,
        version_header_name=routing.header_name,
    )


def routing_for_version_set(version_set: VersionSet, version_id: str) -> VersionRouting:
    """Routing for a new member of an existing set, inheriting its names."""
    return VersionRouting(
        scheme=version_set.versioning_scheme,
        version_id=version_id,
        query_name=version_set.version_query_name,
        header_name=version_set.version_header_name,
    )
