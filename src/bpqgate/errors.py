"""Exception types raised by the BPQ gateway."""


class GatewayError(Exception):
    """Base class for gateway errors."""


class RemoteConnectError(GatewayError):
    """The upstream BBS could not be reached."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Failed to connect to {host}:{port}: {reason}")
