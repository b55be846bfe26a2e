"""Custom exceptions for redep."""


class RedepError(Exception):
    """Base exception for redep."""
    pass


class ConfigurationError(RedepError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, missing_keys: list[str] | None = None):
        super().__init__(message)
        self.missing_keys = list(missing_keys or [])


class AuthError(RedepError):
    """Raised when a proof does not verify against the shared secret."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class ConnectionFailedError(RedepError, ConnectionError):
    """Raised when the server is unreachable or the round trip times out."""

    def __init__(self, message: str, url: str = ""):
        super().__init__(message)
        self.url = url


class ProtocolError(RedepError):
    """Raised when a message does not match the expected schema."""
    pass


class RemoteServerError(RedepError):
    """Raised when the server reports a failure of its own."""

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code


class SpawnError(RedepError):
    """Raised when the shell for the deployment command cannot be started."""
    pass


class ExecutionTimeoutError(RedepError, TimeoutError):
    """Raised when the deployment command exceeds its time limit."""

    def __init__(
        self,
        message: str,
        timeout: float = 0.0,
        returncode: int = -1,
        stdout: str = "",
        stderr: str = "",
        truncated: bool = False,
    ):
        super().__init__(message)
        self.timeout = timeout
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.truncated = truncated


class SupervisorError(RedepError):
    """Raised when neither process manager backend can fulfil a request."""
    pass
