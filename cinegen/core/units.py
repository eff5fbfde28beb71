"""
Generation units and the entities they refer to.

A storyboard job is a sequence of scenes numbered 1..T; a portrait job is a
set of characters. Both are units the orchestrator drives to completion.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class UnitStatus(Enum):
    """Lifecycle of a single generation unit."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class Character:
    """A known entity that scenes may reference."""
    id: str
    name: str
    role: str = ""
    visual_description: str = ""
    personality: str = ""
    reference_image: Optional[bytes] = None


@dataclass
class Scene:
    """One storyboard cut.

    ``id`` is the 1-based sequence index within the storyboard and is always
    assigned by the batch mapper, never taken from the service.
    """
    id: int
    description: str
    subject_and_composition: str = ""
    setting: str = ""
    action: str = ""
    emotion: str = ""
    characters_in_scene: List[str] = field(default_factory=list)
    original_script_excerpt: str = ""
    custom_prompt: Optional[str] = None
    generated_image: Optional[bytes] = None
    status: UnitStatus = UnitStatus.PENDING


@dataclass(frozen=True)
class BatchRange:
    """Inclusive, 1-based range of scenes requested in one call."""
    start: int
    end: int

    def __post_init__(self):
        if self.start < 1:
            raise ValueError("start must be >= 1")
        if self.end < self.start:
            raise ValueError("end must be >= start")

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"
