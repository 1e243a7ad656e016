"""
Models for raw descriptor layers, as loaded from a single file.
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict

class Override:
    """
    Marks a value tagged ``!override``: it replaces the inherited value
    wholesale instead of being merged into it.
    """
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __eq__(self, other):
        return isinstance(other, Override) and other.value == self.value

    def __repr__(self):
        return f"Override({self.value!r})"

class Reset:
    """
    Marks a field tagged ``!reset``: the inherited value is dropped.
    """
    __slots__ = ()

    def __eq__(self, other):
        return isinstance(other, Reset)

    def __repr__(self):
        return "Reset()"

class Layer(BaseModel):
    """
    One descriptor file's contribution to the stack, ranked by precedence
    (base = 0, override = 1, environment overrides = 2+).
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    origin: str
    rank: int = 0
    name: Optional[str] = None
    services: Dict[str, Dict[str, Any]] = {}
    networks: Dict[str, Any] = {}
    volumes: Dict[str, Any] = {}
