"""
Models for defining services, including restart policies, health checks, and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum

class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"

class DependencyCondition(str, Enum):
    """
    State a dependency must reach before its dependent may start.
    """
    STARTED = "started"
    HEALTHY = "healthy"

class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = 0

class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.
    Durations are in seconds.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0

class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path (or named volume) and a service path.
    """
    model_config = ConfigDict(frozen=True)

    source: Optional[str] = None
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """True when the source refers to a top-level named volume."""
        return bool(self.source) and not self.source.startswith(('.', '/', '~', '$'))

    def __str__(self) -> str:
        if not self.source:
            return self.target
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"

class PortMapping(BaseModel):
    """
    A published or exposed service port. Ranges such as ``8000-8001:80-81``
    keep their inclusive upper bounds in ``target_end`` and ``published_end``.
    """
    model_config = ConfigDict(frozen=True)

    target: int
    target_end: Optional[int] = None
    published: Optional[int] = None
    published_end: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"

    def __str__(self) -> str:
        text = _port_text(self.target, self.target_end)
        if self.published is not None:
            text = f"{_port_text(self.published, self.published_end)}:{text}"
            if self.host_ip:
                text = f"{self.host_ip}:{text}"
        if self.protocol != "tcp":
            text = f"{text}/{self.protocol}"
        return text

def _port_text(start: int, end: Optional[int]) -> str:
    return str(start) if end is None else f"{start}-{end}"

class BuildSpec(BaseModel):
    """
    Build context for services that are built rather than pulled.
    """
    model_config = ConfigDict(frozen=True)

    context: str = "."
    dockerfile: Optional[str] = None
    args: Dict[str, Optional[str]] = {}

class ServiceDependency(BaseModel):
    """
    One ``depends_on`` entry.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    condition: DependencyCondition = DependencyCondition.STARTED

class ResourceLimits(BaseModel):
    """
    Resource limits for a service instance.
    """
    model_config = ConfigDict(frozen=True)

    cpus: Optional[float] = None
    memory: Optional[int] = None  # bytes

class ServiceDefinition(BaseModel):
    """
    The full, merged definition of a single service.
    Immutable once built.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: Optional[str] = None
    build: Optional[BuildSpec] = None

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None
    user: Optional[str] = None

    # Environment; a None value means "inherit from the runtime environment"
    environment: Dict[str, Optional[str]] = {}
    env_file: List[str] = []

    # Networking
    ports: List[PortMapping] = []
    expose: List[int] = []
    networks: List[str] = []
    hostname: Optional[str] = None

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: Dict[str, ServiceDependency] = {}

    # Resources
    resources: Optional[ResourceLimits] = None

    # Metadata
    labels: Dict[str, str] = {}
