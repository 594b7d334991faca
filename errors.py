class GatewayError(Exception):
    """Base for errors that end a request with a structured JSON body."""
    status_code = 500
    message = "Internal error"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    @property
    def name(self):
        return type(self).__name__

    def as_dict(self):
        return {"error": self.name, "message": self.message}


class AccessDenied(GatewayError):
    status_code = 401
    message = "Access denied"


class MissingKey(AccessDenied):
    message = "API key is required"


class InvalidKey(AccessDenied):
    message = "Invalid API key"


class ExpiredKey(AccessDenied):
    message = "API key has expired"


class BadRequest(GatewayError):
    status_code = 400
    message = "Bad request"


class MissingParameter(BadRequest):
    message = "Missing id parameter"


class InvalidIPFormat(BadRequest):
    message = "Invalid IP address format"


class UnknownBrand(GatewayError):
    status_code = 404
    message = "Brand not found"


class ReputationError(GatewayError):
    message = "Internal server error"


class CacheIOError(ReputationError):
    message = "Failed to persist reputation cache"


class ProviderUnavailable(Exception):
    """Provider could not give an answer. Absorbed by the fail-open policy."""


class KeyStoreError(Exception):
    """The API key table could not be loaded."""
