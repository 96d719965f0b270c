class GatewayError(Exception):
    """Base class for every error that ends a request.

    ``message`` is what the client sees, ``status_code`` is the HTTP status
    the error maps to.
    """

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class RoutingError(GatewayError):
    status_code = 404


class AuthError(GatewayError):
    status_code = 401


class ValidationError(GatewayError):
    status_code = 400


class InvalidMessageError(ValidationError):
    pass


class DownstreamTransportError(GatewayError):
    """The Gemini call failed; carries the downstream status (400 when there is none)."""

    status_code = 400


class ResponseTransformError(GatewayError):
    status_code = 500


class EmptyCandidatesError(ResponseTransformError):
    pass


class StreamDecodeError(GatewayError):
    """A downstream SSE line could not be decoded; the stream is aborted."""


class IncompleteStreamError(GatewayError):
    """The downstream stream ended without ever reporting a finish reason."""
