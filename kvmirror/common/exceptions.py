"""
Custom Exception Classes for kvmirror

Hierarchical exception structure shared by the config engine
and the database pool.
"""


class KvMirrorError(Exception):
    """Base exception for all kvmirror errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(KvMirrorError):
    """Configuration-related errors"""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(f"Config Error: {message}", recoverable=False)


class RemoteUnavailableError(KvMirrorError):
    """Key-value store call failed (network, timeout or non-2xx)"""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        key: str | None = None,
        status_code: int | None = None,
    ):
        self.operation = operation
        self.key = key
        self.status_code = status_code
        super().__init__(f"Remote Unavailable: {message}", recoverable=True)


class AuthenticationError(RemoteUnavailableError):
    """Key-value store rejected the credentials"""

    def __init__(self, message: str, user: str | None = None, status_code: int | None = None):
        self.user = user
        super().__init__(message, operation="authenticate", status_code=status_code)


class AlreadyActiveError(KvMirrorError):
    """A watch loop is already running on this engine"""

    def __init__(self, namespace: str):
        self.namespace = namespace
        super().__init__(f"Already listening on {namespace}", recoverable=False)


class PoolError(KvMirrorError):
    """Connection pool misuse"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Pool Error: {message}", recoverable)


class PoolExhaustedError(PoolError):
    """No pooled connection available within policy"""

    def __init__(self, max_active: int, waited_s: float | None = None):
        self.max_active = max_active
        self.waited_s = waited_s
        detail = f"all {max_active} connections in use"
        if waited_s is not None:
            detail += f" after waiting {waited_s:.1f}s"
        super().__init__(detail, recoverable=True)


class TransactionError(KvMirrorError):
    """Transaction state errors (commit without begin, nested begin)"""

    def __init__(self, message: str):
        super().__init__(f"Transaction Error: {message}", recoverable=False)
