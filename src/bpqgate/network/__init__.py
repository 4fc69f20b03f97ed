"""Network layer for the BPQ gateway - node listener, BBS link and relays."""

from bpqgate.network.connection import LocalConnection, RemoteConnection
from bpqgate.network.gateway_server import GatewayServer
from bpqgate.network.protocol import TelnetTextDecoder, sanitize, strip_ansi
from bpqgate.network.relay import DownlinkRelay, UplinkRelay, is_exit_command
from bpqgate.network.session import Session, SessionManager, SessionState

__all__ = [
    "DownlinkRelay",
    "GatewayServer",
    "LocalConnection",
    "RemoteConnection",
    "Session",
    "SessionManager",
    "SessionState",
    "TelnetTextDecoder",
    "UplinkRelay",
    "is_exit_command",
    "sanitize",
    "strip_ansi",
]
