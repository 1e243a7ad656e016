"""
Models for merged stacks and sequencer configuration.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from .service_definition import ServiceDefinition

class MergedStack(BaseModel):
    """
    All layers folded together but not yet interpolated or typed.
    ``provenance`` maps service -> field -> origin of the layer that last set it.
    """
    name: Optional[str] = None
    services: Dict[str, Dict[str, Any]] = {}
    networks: Dict[str, Any] = {}
    volumes: Dict[str, Any] = {}
    origins: List[str] = []
    provenance: Dict[str, Dict[str, str]] = {}

    def origin_of(self, service: str, field: Optional[str] = None) -> Optional[str]:
        """
        Returns the file that last defined a service field, or the service
        itself when no field is given.
        """
        fields = self.provenance.get(service, {})
        if field and field in fields:
            return fields[field]
        return fields.get("", None)

class EffectiveStack(BaseModel):
    """
    Complete configuration for a multi-service stack after merging and
    variable resolution. Equivalent to ``docker compose config`` output.
    """
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, Any] = {}
    volumes: Dict[str, Any] = {}
    origins: List[str] = []
    provenance: Dict[str, Dict[str, str]] = {}

    def origin_of(self, service: str, field: Optional[str] = None) -> Optional[str]:
        """
        Returns the file that last defined a service field.
        """
        fields = self.provenance.get(service, {})
        if field and field in fields:
            return fields[field]
        return fields.get("")

class SequencerConfig(BaseModel):
    """
    Timeouts and restart backoff for the startup sequencer. All values in seconds.
    """
    startup_timeout: Optional[float] = Field(default=300.0, gt=0)
    shutdown_grace: float = Field(default=10.0, ge=0)
    stop_timeout: float = Field(default=10.0, ge=0)
    restart_delay: float = Field(default=1.0, ge=0)
    max_restart_delay: float = Field(default=300.0, ge=0)
