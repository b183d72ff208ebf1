"""Exception taxonomy for the anonymous-identity core.

Every error raised by a core module derives from PersonaVeilError so the API
boundary can map it to a status code with a single handler per class.
"""


class PersonaVeilError(Exception):
    """Base error. `public_message` is the only text that may reach a client."""

    public_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class ConfigError(PersonaVeilError, ValueError):
    public_message = "Invalid configuration"


class CryptoError(PersonaVeilError):
    """Entropy or key failure. Callers must reject the operation."""

    public_message = "Cryptographic operation failed"


class StorageError(PersonaVeilError):
    public_message = "Storage operation failed"


class AuthenticationError(PersonaVeilError):
    """Missing, invalid, expired or revoked token."""

    public_message = "Anonymous authentication failed"


class NotAuthorized(PersonaVeilError):
    """Ownership mismatch. Reported to clients exactly like NotFound."""

    public_message = "Not found"


class NotVerified(PersonaVeilError):
    public_message = "Only verified users can use anonymous mode"


class QuotaExceeded(PersonaVeilError):
    public_message = "Maximum number of anonymous personas reached"


class NotFound(PersonaVeilError):
    public_message = "Not found"


class ValidationError(PersonaVeilError, ValueError):
    public_message = "Invalid request"


class IntegrityFailure(PersonaVeilError):
    """Hash or signature mismatch on read. Surfaced to moderators only."""

    public_message = "Content integrity check failed"


class RoutingDisabled(PersonaVeilError):
    """The persona has switched off the requested traffic-mixing feature."""

    public_message = "This feature is disabled for the persona"
