"""
Batch generation orchestrator.

Three ways of driving units through the generation service:

1. Sequential batches - a storyboard planned range by range, strictly in
   order, all-or-nothing per job
2. Independent units - portraits generated in small parallel groups, where
   a failed unit is reported and skipped
3. Paid units - final images produced one at a time, each gated by a token
   reservation and stoppable between units
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar
)

from cinegen.config.loader import RetryConfig
from .batching import (
    DEFAULT_BATCH_SIZE,
    build_continuity_preamble,
    clean_json,
    map_batch_scenes,
    parse_batch_response,
    partition_batches
)
from .errors import BatchJobError, GenerationError, MalformedResponseError, ServiceBusyError
from .ledger import TokenLedger
from .prompts import (
    CHARACTER_SCHEMA,
    STORYBOARD_SCHEMA,
    build_character_prompt,
    build_portrait_prompt,
    build_scene_image_prompt,
    build_storyboard_prompt
)
from .retry import call_with_retry, is_retryable
from .session import Session
from .units import Character, Scene, UnitStatus

logger = logging.getLogger(__name__)

U = TypeVar("U")
R = TypeVar("R")

ProgressCallback = Callable[[int, int], None]
Sleep = Callable[[float], Awaitable[None]]

DEFAULT_CONCURRENCY = 3


@dataclass(frozen=True)
class StoryboardContext:
    """Shared input for every batch of one storyboard job."""
    scenario: str
    characters: Sequence[Character]


@dataclass
class UnitFailure(Generic[U]):
    index: int
    unit: U
    error: Exception


@dataclass
class IndependentJobResult(Generic[U, R]):
    """Per-unit results aligned with the input; failed units hold None."""
    results: List[Optional[R]]
    failures: List[UnitFailure] = field(default_factory=list)

    @property
    def resolved_count(self) -> int:
        return len(self.results) - len(self.failures)


class StopReason(Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    INSUFFICIENT_TOKENS = "insufficient_tokens"


@dataclass
class PaidJobResult(Generic[U, R]):
    """Units produced and paid for, plus why the run ended."""
    completed: List[Tuple[U, R]]
    failures: List[UnitFailure]
    stop_reason: StopReason
    reason: Optional[str] = None


class CancellationToken:
    """Cooperative stop signal, checked between units only."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


async def run_sequential_batch_job(
    client,
    context: StoryboardContext,
    total_units: int,
    on_progress: Optional[ProgressCallback] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    retry: Optional[RetryConfig] = None,
    sleep: Sleep = asyncio.sleep
) -> List[Scene]:
    """Generate a storyboard of ``total_units`` scenes, batch by batch.

    Batches run strictly in ascending order; each one after the first is
    given the last scene of the previous batch as continuity context.

    Args:
        client: Generation client exposing ``generate_json``
        context: Script and known characters
        total_units: Number of scenes T
        on_progress: Called with (scenes_so_far, T) after each batch
        batch_size: Scenes requested per call
        retry: Backoff policy for transient service errors
        sleep: Awaitable used for backoff delays

    Returns:
        Exactly T scenes with ids 1..T in order

    Raises:
        ServiceBusyError: If the service stayed overloaded
        MalformedResponseError: If a batch response could not be parsed
        BatchJobError: If a batch failed for any other reason
    """
    retry = retry or RetryConfig()
    scenes: List[Scene] = []

    for batch in partition_batches(total_units, batch_size):
        previous = scenes[-1] if scenes else None
        prompt = build_storyboard_prompt(
            context.scenario,
            context.characters,
            total_units,
            batch,
            build_continuity_preamble(previous, batch)
        )

        try:
            text = await call_with_retry(
                lambda: client.generate_json(prompt, STORYBOARD_SCHEMA, "storyboard_batch"),
                attempts=retry.attempts,
                initial_delay=retry.initial_delay,
                sleep=sleep
            )
        except MalformedResponseError:
            raise
        except Exception as e:
            if is_retryable(e):
                raise ServiceBusyError() from e
            raise BatchJobError(f"Storyboard batch {batch} failed: {e}", batch) from e

        payload = parse_batch_response(text)
        if payload.coverage_verification:
            logger.info("[Batch %s] Verification: %s", batch, payload.coverage_verification)

        scenes.extend(map_batch_scenes(payload.scenes, batch, context.characters))
        if on_progress:
            on_progress(len(scenes), total_units)

    return scenes


async def run_independent_unit_job(
    units: Sequence[U],
    worker: Callable[[U], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY
) -> IndependentJobResult:
    """Run ``worker`` over units in parallel groups of ``concurrency``.

    A failing unit is logged and left unresolved; the job always continues
    to the next group and never raises for a unit failure.
    """
    if concurrency <= 0:
        raise ValueError("concurrency must be > 0")

    results: List[Optional[R]] = [None] * len(units)
    failures: List[UnitFailure] = []

    for start in range(0, len(units), concurrency):
        group = units[start:start + concurrency]
        outcomes = await asyncio.gather(
            *(worker(unit) for unit in group),
            return_exceptions=True
        )
        for offset, outcome in enumerate(outcomes):
            index = start + offset
            if isinstance(outcome, Exception):
                logger.error("Unit %d failed", index + 1, exc_info=outcome)
                failures.append(UnitFailure(index, group[offset], outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[index] = outcome

    return IndependentJobResult(results=results, failures=failures)


async def run_paid_unit_job(
    units: Sequence[U],
    worker: Callable[[U], Awaitable[R]],
    ledger: TokenLedger,
    session: Session,
    cost: int,
    unit_ref: Callable[[U], str] = str,
    cancel_token: Optional[CancellationToken] = None,
    on_progress: Optional[ProgressCallback] = None
) -> PaidJobResult:
    """Produce paid units one at a time.

    Before each unit the cancel token is checked and ``cost`` tokens are
    reserved; the reservation is confirmed after the unit is produced and
    released if it fails. Completed units stay committed when the run stops.
    """
    completed: List[Tuple[U, R]] = []
    failures: List[UnitFailure] = []
    total = len(units)

    for index, unit in enumerate(units):
        if cancel_token is not None and cancel_token.cancelled:
            logger.info("Paid run cancelled after %d of %d units", index, total)
            return PaidJobResult(completed, failures, StopReason.CANCELLED)

        ref = unit_ref(unit)
        reservation = await ledger.check_and_reserve(session, cost, ref)
        if not reservation.ok:
            logger.info("Stopping paid run at %s: %s", ref, reservation.reason)
            return PaidJobResult(completed, failures, StopReason.INSUFFICIENT_TOKENS, reservation.reason)

        try:
            result = await worker(unit)
        except Exception as e:
            logger.error("Error generating %s", ref, exc_info=e)
            await ledger.release(session, reservation.reservation_id)
            failures.append(UnitFailure(index, unit, e))
        else:
            debit = await ledger.commit_debit(session, cost, ref, reservation.reservation_id)
            if not debit.success:
                logger.error("Failed to deduct tokens for %s: %s", ref, debit.error)
            completed.append((unit, result))

        if on_progress:
            on_progress(index + 1, total)

    return PaidJobResult(completed, failures, StopReason.COMPLETED)


async def extract_characters(
    client,
    scenario: str,
    retry: Optional[RetryConfig] = None,
    sleep: Sleep = asyncio.sleep
) -> List[Character]:
    """Ask the service for the script's main characters.

    An unparseable answer yields an empty cast rather than an error.

    Raises:
        ServiceBusyError: If the service stayed overloaded
        GenerationError: If the call failed for any other reason
    """
    retry = retry or RetryConfig()
    try:
        text = await call_with_retry(
            lambda: client.generate_json(build_character_prompt(scenario), CHARACTER_SCHEMA, "characters"),
            attempts=retry.attempts,
            initial_delay=retry.initial_delay,
            sleep=sleep
        )
    except GenerationError:
        raise
    except Exception as e:
        if is_retryable(e):
            raise ServiceBusyError() from e
        raise GenerationError(f"Character extraction failed: {e}") from e

    try:
        data = json.loads(clean_json(text))
        raw_characters = data["characters"] if isinstance(data, dict) else data
        return [
            Character(
                id=f"char_{index}",
                name=raw["name"],
                role=raw.get("role", ""),
                visual_description=raw.get("visualDescription", ""),
                personality=raw.get("personality", "")
            )
            for index, raw in enumerate(raw_characters)
        ]
    except (ValueError, KeyError, TypeError, AttributeError):
        logger.error("JSON parse error in character extraction: %r", text)
        return []


async def generate_portraits(
    client,
    characters: Sequence[Character],
    concurrency: int = DEFAULT_CONCURRENCY,
    retry: Optional[RetryConfig] = None,
    sleep: Sleep = asyncio.sleep
) -> IndependentJobResult:
    """Generate a reference portrait for each character.

    Resolved portraits are stored on the character; failed ones stay empty.
    """
    retry = retry or RetryConfig()

    async def portrait(character: Character) -> bytes:
        image = await call_with_retry(
            lambda: client.generate_image(build_portrait_prompt(character), size="1024x1024"),
            attempts=retry.attempts,
            initial_delay=retry.initial_delay,
            sleep=sleep
        )
        character.reference_image = image
        return image

    return await run_independent_unit_job(characters, portrait, concurrency)


async def generate_scene_images(
    client,
    scenes: Sequence[Scene],
    characters: Sequence[Character],
    ledger: TokenLedger,
    session: Session,
    cost: int,
    cancel_token: Optional[CancellationToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    retry: Optional[RetryConfig] = None,
    sleep: Sleep = asyncio.sleep
) -> PaidJobResult:
    """Produce final images for every scene that doesn't have one yet."""
    retry = retry or RetryConfig()
    pending = [scene for scene in scenes if scene.generated_image is None]

    async def scene_image(scene: Scene) -> bytes:
        in_scene = [c for c in characters if c.id in scene.characters_in_scene]
        reference = in_scene[0] if in_scene and in_scene[0].reference_image else None
        prompt = build_scene_image_prompt(scene, characters, reference)

        scene.status = UnitStatus.IN_FLIGHT
        try:
            image = await call_with_retry(
                lambda: client.generate_image(
                    prompt,
                    reference_image=reference.reference_image if reference else None
                ),
                attempts=retry.attempts,
                initial_delay=retry.initial_delay,
                sleep=sleep
            )
        except Exception:
            scene.status = UnitStatus.FAILED
            raise
        scene.generated_image = image
        scene.status = UnitStatus.COMPLETE
        return image

    return await run_paid_unit_job(
        pending,
        scene_image,
        ledger,
        session,
        cost,
        unit_ref=lambda scene: f"scene #{scene.id}",
        cancel_token=cancel_token,
        on_progress=on_progress
    )
