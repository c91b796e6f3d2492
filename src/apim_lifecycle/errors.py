"""Error taxonomy for the lifecycle engine.

Every error names the entity ids involved and the rule that was violated.
Remote-plane failures are translated by :func:`gateway_errors` so callers
never see transport-specific detail.
"""

from contextlib import contextmanager

from apim_lifecycle.gateway.errors import (
    GatewayConflict,
    GatewayError,
    GatewayNotFound,
    GatewayTimeout,
    GatewayUnauthorized,
    GatewayUnavailable,
)


class LifecycleError(Exception):
    """Base class for all engine errors."""

    code = "LIFECYCLE_ERROR"
    retryable = False

    def __init__(self, rule: str, entities: dict[str, str] | None = None, field: str | None = None):
        self.rule = rule
        self.entities = dict(entities or {})
        self.field = field
        super().__init__(self._format())

    def _format(self) -> str:
        parts = [self.rule]
        if self.field:
            parts.append(f"field={self.field}")
        parts.extend(f"{kind}={ident}" for kind, ident in self.entities.items())
        return parts[0] if len(parts) == 1 else f"{parts[0]} ({', '.join(parts[1:])})"

    def to_payload(self) -> dict:
        payload = {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
            "entities": self.entities,
        }
        if self.field:
            payload["field"] = self.field
        return payload


class ParseError(LifecycleError):
    """Malformed contract."""

    code = "PARSE_ERROR"

    def __init__(self, reason: str, field: str | None = None):
        self.reason = reason
        super().__init__(reason, field=field)


class ValidationError(LifecycleError):
    """Bad versioning or tool parameters."""

    code = "VALIDATION_ERROR"

    def __init__(self, reason: str, field: str | None = None):
        self.reason = reason
        super().__init__(reason, field=field)


class SchemeConflict(LifecycleError):
    code = "SCHEME_CONFLICT"

    def __init__(self, version_set_id: str, existing: str, requested: str):
        self.existing = existing
        self.requested = requested
        super().__init__(
            f"version set uses scheme '{existing}', cannot add a version with scheme '{requested}'",
            {"versionSet": version_set_id},
        )


class NotFound(LifecycleError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, ident: str, rule: str | None = None):
        super().__init__(rule or f"{entity} '{ident}' does not exist", {entity: ident})


class PreconditionFailed(LifecycleError):
    """A dependent resource required by the call does not exist yet."""

    code = "PRECONDITION_FAILED"

    def __init__(self, missing: str, entities: dict[str, str], rule: str | None = None):
        self.missing = missing
        ident = entities.get(missing, "")
        super().__init__(rule or f"{missing} '{ident}' must exist first", entities)

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["missing"] = self.missing
        return payload


class Conflict(LifecycleError):
    """Naming collision the remote plane would not resolve by upsert."""

    code = "CONFLICT"


class AccessDenied(LifecycleError):
    code = "ACCESS_DENIED"


class Timeout(LifecycleError):
    code = "TIMEOUT"
    retryable = True


class Unavailable(LifecycleError):
    code = "UNAVAILABLE"
    retryable = True


class ConfigurationError(LifecycleError):
    code = "CONFIGURATION_ERROR"


@contextmanager
def gateway_errors(entity: str, **ids: str):
    """Translate facade errors raised inside the block.

    ``entity`` names the resource addressed by the call and must be one of
    the keys in ``ids``; it is the subject of ``NotFound``.
    """
    try:
        yield
    except GatewayNotFound as e:
        raise NotFound(entity, ids.get(entity, "")) from e
    except GatewayConflict as e:
        raise Conflict(f"{entity} conflicts with an existing resource", ids) from e
    except GatewayUnauthorized as e:
        raise AccessDenied(f"not authorized to manage {entity}", ids) from e
    except GatewayTimeout as e:
        raise Timeout(f"management plane did not answer in time for {entity}", ids) from e
    except GatewayUnavailable as e:
        raise Unavailable(f"management plane unreachable for {entity}", ids) from e
    except GatewayError as e:
        raise Unavailable(f"management plane failed for {entity}", ids) from e
