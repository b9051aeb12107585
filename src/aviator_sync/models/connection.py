"""
Connection health data model
"""

from dataclasses import dataclass

from .enums import ConnectionStatus


@dataclass
class ConnectionHealth:
    """
    Health of the polling connection. Written only by ConnectionHealthMonitor.

    Attributes:
        status: connected / disconnected / reconnecting
        consecutive_errors: Failed polls since the last success
        last_success_at: Monotonic time of the last successful poll (None before the first)
        total_errors: Failed polls this session
        last_error: Message of the most recent failure
    """

    status: ConnectionStatus = ConnectionStatus.CONNECTED
    consecutive_errors: int = 0
    last_success_at: float | None = None
    total_errors: int = 0
    last_error: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED
