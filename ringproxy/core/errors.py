class HashRingError(Exception):
    """Base class for hash ring errors"""


class HostAlreadyExists(HashRingError):
    """Raised when registering a host that is already on the ring"""

    def __init__(self, host: str):
        self.host: str = host
        super().__init__(f"host already exists: {host}")


class HostNotFound(HashRingError):
    """Raised when a host is unknown or the ring has no hosts"""

    def __init__(self, host: str | None = None):
        self.host: str | None = host
        if host is None:
            super().__init__("host not found: ring is empty")
        else:
            super().__init__(f"host not found: {host}")


class LoadBoundExhausted(HashRingError):
    """Raised when a bounded lookup walks the whole ring without a candidate"""

    def __init__(self, key: str, capacity: int):
        self.key: str = key
        self.capacity: int = capacity
        super().__init__(
            f"no host can take key {key!r} within capacity {capacity}"
        )
