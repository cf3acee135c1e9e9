"""
Keyward error types.

Specific exceptions for different failure modes, so callers can pick the
right remediation (install a signer, retry the handshake, log in again).
"""


class KeywardError(Exception):
    """Base error for all Keyward operations."""
    pass


# Signer errors
class SignerError(KeywardError):
    """Base error for signer backend failures."""
    pass


class CapabilityUnavailableError(SignerError):
    """No signer is present or configured for the requested operation."""

    def __init__(self, operation: str, reason: str = "no signer available"):
        self.operation = operation
        super().__init__(f"{operation} unavailable: {reason}")


class PermissionDeniedError(SignerError):
    """A signer is present but refused the request."""

    def __init__(self, operation: str, message: str = "request refused by signer"):
        self.operation = operation
        super().__init__(f"{operation} denied: {message}")


class VerificationFailedError(SignerError):
    """A signature does not validate against its public key and content."""
    pass


# Remote signer handshake errors
class HandshakeError(KeywardError):
    """Base error for remote signer binding failures."""
    pass


class HandshakeTimeoutError(HandshakeError):
    """Remote signer did not complete binding in time."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Remote signer did not respond within {timeout_seconds:.0f}s; "
            "approve the connection in your signer app and try again"
        )


class DecryptionFailedError(SignerError):
    """The signer could not open this one payload (wrong key, bad MAC, refused)."""
    pass


class RemoteSignerError(SignerError):
    """The remote signer answered a request with an error."""
    pass


# Network errors
class NetworkError(KeywardError):
    """Network-level failures (DNS, connection refused, etc.)."""
    pass


class RelayError(NetworkError):
    """Relay rejected a publish or could not be reached."""
    pass


class ApiError(NetworkError):
    """Backend answered with an error status."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


# Session errors
class SessionError(KeywardError):
    """Base error for identity session issues."""
    pass


class SessionExpiredError(SessionError):
    """Session TTL elapsed or the server rejected the credentials."""
    pass


class SessionNotFoundError(SessionError):
    """No persisted or active session."""
    pass


class AuditTamperedError(KeywardError):
    """The audit trail's hash chain does not verify."""

    def __init__(self, line_number: int, message: str):
        self.line_number = line_number
        super().__init__(f"Audit chain broken at line {line_number}: {message}")


# Wallet errors
class WalletError(KeywardError):
    """Base error for wallet event handling."""
    pass


class TokenSetPublishError(WalletError):
    """A new token set could not be published; the wallet state is unchanged."""
    pass
