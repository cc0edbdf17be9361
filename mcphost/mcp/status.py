"""MCP status tracking and aggregation.

StatusManager is shared between the runtime (writer) and the presentation
layer (reader), possibly from different threads, so its map is guarded by a
plain threading lock that is never held across an await.
"""

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from mcphost.models.mcp import MCPConfig


class StatusKind(str, Enum):
    DISABLED = "disabled"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    RESTARTING = "restarting"


_DISPLAY_NAMES = {
    StatusKind.DISABLED: "Disabled",
    StatusKind.STOPPED: "Stopped",
    StatusKind.STARTING: "Starting...",
    StatusKind.RUNNING: "Running",
    StatusKind.ERROR: "Error",
    StatusKind.RESTARTING: "Restarting...",
}


@dataclass(frozen=True)
class MCPStatus:
    """Status of one provider. ``reason`` is only set for errors."""

    kind: StatusKind
    reason: str | None = None

    @classmethod
    def disabled(cls) -> "MCPStatus":
        return cls(StatusKind.DISABLED)

    @classmethod
    def stopped(cls) -> "MCPStatus":
        return cls(StatusKind.STOPPED)

    @classmethod
    def starting(cls) -> "MCPStatus":
        return cls(StatusKind.STARTING)

    @classmethod
    def running(cls) -> "MCPStatus":
        return cls(StatusKind.RUNNING)

    @classmethod
    def restarting(cls) -> "MCPStatus":
        return cls(StatusKind.RESTARTING)

    @classmethod
    def error(cls, reason: str) -> "MCPStatus":
        return cls(StatusKind.ERROR, reason)

    @property
    def is_running(self) -> bool:
        return self.kind is StatusKind.RUNNING

    @property
    def is_error(self) -> bool:
        return self.kind is StatusKind.ERROR

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self.kind]


class AggregateStatus(str, Enum):
    EMPTY = "empty"
    ALL_HEALTHY = "all_healthy"
    PARTIAL_FAILURE = "partial_failure"
    ALL_FAILED = "all_failed"


class StatusManager:
    """Thread-safe per-provider status store.

    Example usage:
        statuses = StatusManager()
        statuses.set_status(mcp_id, MCPStatus.running())
        statuses.get_status(other_id)  # MCPStatus.stopped()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: dict[UUID, MCPStatus] = {}

    def set_status(self, mcp_id: UUID, status: MCPStatus) -> None:
        with self._lock:
            self._statuses[mcp_id] = status

    def get_status(self, mcp_id: UUID) -> MCPStatus:
        """Get the status for a provider, Stopped when none was recorded."""
        with self._lock:
            return self._statuses.get(mcp_id, MCPStatus.stopped())

    def clear(self, mcp_id: UUID) -> None:
        with self._lock:
            self._statuses.pop(mcp_id, None)

    def get_all_statuses(self) -> dict[UUID, MCPStatus]:
        """Get a snapshot of every recorded status."""
        with self._lock:
            return dict(self._statuses)

    def count_running(self) -> int:
        with self._lock:
            return sum(1 for s in self._statuses.values() if s.is_running)

    def count_errors(self) -> int:
        with self._lock:
            return sum(1 for s in self._statuses.values() if s.is_error)

    def aggregate(self) -> AggregateStatus:
        """Aggregate over a snapshot of every recorded status."""
        return aggregate_status(self.get_all_statuses().values())


def aggregate_status(statuses: Iterable[MCPStatus]) -> AggregateStatus:
    """Aggregate a collection of statuses into a single health summary.

    Empty input is EMPTY, all running is ALL_HEALTHY, all errors is
    ALL_FAILED, and any other mix is PARTIAL_FAILURE.
    """
    items = list(statuses)
    if not items:
        return AggregateStatus.EMPTY

    errors = sum(1 for s in items if s.is_error)
    running = sum(1 for s in items if s.is_running)

    if errors == len(items):
        return AggregateStatus.ALL_FAILED
    if running == len(items):
        return AggregateStatus.ALL_HEALTHY
    return AggregateStatus.PARTIAL_FAILURE


def get_config_status(config: MCPConfig) -> MCPStatus:
    """Status to display for a config before the runtime has touched it."""
    if not config.enabled:
        return MCPStatus.disabled()
    return MCPStatus.starting()
