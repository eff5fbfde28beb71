"""
Storyboard batch partitioning and response mapping.

A storyboard of T scenes is requested in contiguous ranges so that each
request can be planned coherently by the generation service. Each range
after the first carries the previous scene as continuity context.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .errors import MalformedResponseError
from .units import BatchRange, Character, Scene, UnitStatus

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20


@dataclass(frozen=True)
class BatchPayload:
    """The parsed body of one storyboard batch response."""
    scenes: List[Dict[str, Any]]
    coverage_verification: Optional[str] = None


def partition_batches(total_units: int, batch_size: int = DEFAULT_BATCH_SIZE) -> List[BatchRange]:
    """Split ``[1, total_units]`` into ascending, gap-free ranges.

    Every range holds ``batch_size`` units except the last, which holds the
    remainder.

    Raises:
        ValueError: If total_units is negative or batch_size is not positive
    """
    if total_units < 0:
        raise ValueError("total_units must be >= 0")
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")

    return [
        BatchRange(start, min(start + batch_size - 1, total_units))
        for start in range(1, total_units + 1, batch_size)
    ]


def build_continuity_preamble(previous: Optional[Scene], batch: BatchRange) -> str:
    """Describe where the previous batch ended, or nothing for the first batch."""
    if previous is None:
        return ""
    return (
        f"[Previous scene (#{previous.id})]\n"
        f"{previous.description}\n\n"
        f"Instruction: scene #{batch.start} must continue naturally from the "
        f"scene above. Do not skip any part of the story."
    )


def clean_json(text: Optional[str]) -> str:
    """Strip markdown code fences the service sometimes wraps JSON in."""
    if not text:
        return ""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[len("```"):]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-len("```")]
    return cleaned.strip()


def parse_batch_response(text: Optional[str]) -> BatchPayload:
    """Parse a storyboard batch response.

    Raises:
        MalformedResponseError: If the text is not the expected structure
    """
    try:
        data = json.loads(clean_json(text))
    except ValueError:
        logger.error("Failed to parse storyboard batch JSON: %r", text)
        raise MalformedResponseError(raw_text=text)

    if not isinstance(data, dict) or not isinstance(data.get("scenes"), list):
        logger.error("Storyboard batch response has no scene list: %r", text)
        raise MalformedResponseError(raw_text=text)

    for item in data["scenes"]:
        if not isinstance(item, dict) or not isinstance(item.get("description"), str):
            logger.error("Storyboard batch contains a malformed scene: %r", item)
            raise MalformedResponseError(raw_text=text)

    coverage = data.get("coverageVerification")
    return BatchPayload(
        scenes=data["scenes"],
        coverage_verification=coverage if isinstance(coverage, str) else None
    )


def resolve_character_ids(names: Sequence[Any], characters: Sequence[Character]) -> List[str]:
    """Map free-text names to known character ids.

    A name resolves to the first character where either name contains the
    other, case-insensitively. Names that resolve to nothing are dropped.
    """
    resolved = []
    for name in names:
        if not isinstance(name, str) or not name.strip():
            continue
        needle = name.strip().lower()
        for character in characters:
            known = character.name.lower()
            if needle in known or known in needle:
                resolved.append(character.id)
                break
    return resolved


def map_batch_scenes(
    raw_scenes: Sequence[Dict[str, Any]],
    batch: BatchRange,
    characters: Sequence[Character]
) -> List[Scene]:
    """Build the scenes of one batch with ids assigned from the batch offset.

    Any id echoed by the service is ignored. Extra scenes beyond the batch
    size are discarded; too few scenes fail the batch, since a gap would
    break the numbering of every later batch.

    Raises:
        MalformedResponseError: If fewer scenes than requested came back
    """
    if len(raw_scenes) < batch.size:
        logger.error(
            "Batch %s returned %d scenes, expected %d",
            batch, len(raw_scenes), batch.size
        )
        raise MalformedResponseError()
    if len(raw_scenes) > batch.size:
        logger.warning(
            "Batch %s returned %d scenes, keeping the first %d",
            batch, len(raw_scenes), batch.size
        )

    scenes = []
    for position, raw in enumerate(raw_scenes[:batch.size]):
        scenes.append(Scene(
            id=batch.start + position,
            description=raw["description"],
            subject_and_composition=_text(raw, "subjectAndComposition"),
            setting=_text(raw, "setting"),
            action=_text(raw, "action"),
            emotion=_text(raw, "emotion"),
            characters_in_scene=resolve_character_ids(raw.get("charactersInScene") or [], characters),
            original_script_excerpt=_text(raw, "originalScriptExcerpt"),
            status=UnitStatus.COMPLETE
        ))
    return scenes


def _text(raw: Dict[str, Any], key: str) -> str:
    value = raw.get(key)
    return value if isinstance(value, str) else ""
