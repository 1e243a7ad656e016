"""
Runtime state of service instances.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class LifecycleState(str, Enum):
    """Lifecycle of a service as driven by the startup sequencer."""

    PENDING = "pending"
    WAITING_FOR_DEPS = "waiting_for_deps"
    STARTING = "starting"
    HEALTHY = "healthy"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(str, Enum):
    """Health status of a service instance."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"


@dataclass
class ServiceHealth:
    """Health information for a running service instance."""

    status: HealthStatus = HealthStatus.STARTING
    failing_streak: int = 0
    last_check: Optional[str] = None
    last_output: str = ""


@dataclass
class ServiceStatus:
    """Sequencer-side view of one service."""

    state: LifecycleState = LifecycleState.PENDING
    health: ServiceHealth = field(default_factory=lambda: ServiceHealth(status=HealthStatus.STOPPED))
    ever_started: bool = False
    exit_code: Optional[int] = None
    restart_count: int = 0
    terminal: bool = False

    @property
    def is_healthy(self) -> bool:
        return self.health.status == HealthStatus.HEALTHY
