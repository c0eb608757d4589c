"""
Error taxonomy shared by the store, the ingestion gateway and the API.
"""


class FleetwatchError(Exception):
    """Base class for every error raised by fleetwatch"""


class ValidationError(FleetwatchError):
    """Malformed or incomplete input - the caller's fault, never retried"""


class NotFoundError(FleetwatchError):
    """The requested machine does not exist"""

    def __init__(self, machine_id: int):
        self.machine_id = machine_id
        super().__init__(f"Machine {machine_id} not found")


class StorageError(FleetwatchError):
    """
    The underlying store failed or is unavailable.

    Carries the name of the engine operation that failed so callers can
    log it and decide whether to retry.
    """

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed: {message}")


class ConfigError(FleetwatchError):
    """Invalid configuration detected at startup"""


class AuthError(FleetwatchError):
    """Missing or invalid bearer token on a protected endpoint"""
