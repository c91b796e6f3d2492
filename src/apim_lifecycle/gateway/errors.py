"""Errors raised by gateway client implementations."""


class GatewayError(Exception):
    """Base class for remote management plane failures."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class GatewayNotFound(GatewayError):
    pass


class GatewayConflict(GatewayError):
    pass


class GatewayUnauthorized(GatewayError):
    pass


class GatewayUnavailable(GatewayError):
    pass


class GatewayTimeout(GatewayUnavailable):
    pass
