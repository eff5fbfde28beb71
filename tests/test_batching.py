"""
Unit tests for storyboard batching.

Tests range partitioning, continuity context, response parsing and
character name resolution.
"""

import json

import pytest

from cinegen.core.batching import (
    build_continuity_preamble,
    clean_json,
    map_batch_scenes,
    parse_batch_response,
    partition_batches,
    resolve_character_ids
)
from cinegen.core.errors import MalformedResponseError
from cinegen.core.units import BatchRange, Character, Scene, UnitStatus


CHARACTERS = [
    Character(id="char_0", name="Haruka"),
    Character(id="char_1", name="Detective Mori"),
]


def raw_scene(description="A scene", characters=None, **extra):
    scene = {
        "description": description,
        "subjectAndComposition": "Close-up",
        "setting": "Night, rain",
        "action": "Runs",
        "emotion": "Afraid",
        "charactersInScene": characters or [],
        "originalScriptExcerpt": "It was raining",
    }
    scene.update(extra)
    return scene


class TestPartitionBatches:
    """Test partitioning of [1, T] into batch ranges."""

    def test_forty_five_in_twenties(self):
        batches = partition_batches(45, 20)
        assert batches == [BatchRange(1, 20), BatchRange(21, 40), BatchRange(41, 45)]

    def test_exact_multiple(self):
        assert partition_batches(40, 20) == [BatchRange(1, 20), BatchRange(21, 40)]

    def test_smaller_than_batch(self):
        assert partition_batches(7, 20) == [BatchRange(1, 7)]

    def test_zero_units(self):
        assert partition_batches(0, 20) == []

    def test_ranges_cover_every_unit_once(self):
        batches = partition_batches(101, 20)
        covered = [i for batch in batches for i in range(batch.start, batch.end + 1)]
        assert covered == list(range(1, 102))
        assert all(batch.size <= 20 for batch in batches)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError, match="batch_size must be > 0"):
            partition_batches(10, 0)
        with pytest.raises(ValueError, match="total_units must be >= 0"):
            partition_batches(-1, 20)


class TestBatchRange:
    def test_size_and_str(self):
        batch = BatchRange(21, 40)
        assert batch.size == 20
        assert str(batch) == "21-40"

    def test_rejects_inverted_range(self):
        with pytest.raises(ValueError):
            BatchRange(5, 4)


class TestContinuityPreamble:
    def test_first_batch_has_none(self):
        assert build_continuity_preamble(None, BatchRange(1, 20)) == ""

    def test_references_previous_scene(self):
        previous = Scene(id=20, description="Haruka opens the door")
        preamble = build_continuity_preamble(previous, BatchRange(21, 40))

        assert "#20" in preamble
        assert "Haruka opens the door" in preamble
        assert "#21" in preamble
        assert "Do not skip" in preamble


class TestParseBatchResponse:
    """Test parsing of structured batch output."""

    def test_valid_response(self):
        text = json.dumps({"scenes": [raw_scene()], "coverageVerification": "Starts at line 1"})
        payload = parse_batch_response(text)

        assert len(payload.scenes) == 1
        assert payload.coverage_verification == "Starts at line 1"

    def test_strips_code_fences(self):
        text = "```json\n" + json.dumps({"scenes": []}) + "\n```"
        payload = parse_batch_response(text)
        assert payload.scenes == []
        assert payload.coverage_verification is None

    def test_invalid_json(self):
        with pytest.raises(MalformedResponseError, match="could not be parsed"):
            parse_batch_response("{not json")

    def test_empty_response(self):
        with pytest.raises(MalformedResponseError):
            parse_batch_response(None)

    def test_missing_scene_list(self):
        with pytest.raises(MalformedResponseError):
            parse_batch_response(json.dumps({"coverageVerification": "ok"}))

    def test_malformed_scene_fails_whole_batch(self):
        text = json.dumps({"scenes": [raw_scene(), "not a scene"]})
        with pytest.raises(MalformedResponseError) as excinfo:
            parse_batch_response(text)
        assert excinfo.value.raw_text == text

    def test_clean_json_plain_fence(self):
        assert clean_json("```\n[1]\n```") == "[1]"


class TestResolveCharacterIds:
    """Test bidirectional case-insensitive name matching."""

    def test_exact_match_ignores_case(self):
        assert resolve_character_ids(["haruka"], CHARACTERS) == ["char_0"]

    def test_returned_name_contains_known_name(self):
        assert resolve_character_ids(["Young Haruka (age 10)"], CHARACTERS) == ["char_0"]

    def test_known_name_contains_returned_name(self):
        assert resolve_character_ids(["Mori"], CHARACTERS) == ["char_1"]

    def test_unresolvable_names_are_dropped(self):
        assert resolve_character_ids(["Stranger", "Haruka", ""], CHARACTERS) == ["char_0"]

    def test_no_known_characters(self):
        assert resolve_character_ids(["Haruka"], []) == []


class TestMapBatchScenes:
    """Test id assignment and field mapping for one batch."""

    def test_ids_overwritten_from_batch_start(self):
        raws = [raw_scene(f"scene {i}", id=999) for i in range(5)]
        scenes = map_batch_scenes(raws, BatchRange(41, 45), CHARACTERS)

        assert [scene.id for scene in scenes] == [41, 42, 43, 44, 45]
        assert all(scene.status == UnitStatus.COMPLETE for scene in scenes)

    def test_fields_and_characters_mapped(self):
        scenes = map_batch_scenes(
            [raw_scene("Chase", characters=["HARUKA", "Nobody"])],
            BatchRange(1, 1),
            CHARACTERS
        )
        scene = scenes[0]
        assert scene.description == "Chase"
        assert scene.subject_and_composition == "Close-up"
        assert scene.setting == "Night, rain"
        assert scene.original_script_excerpt == "It was raining"
        assert scene.characters_in_scene == ["char_0"]

    def test_extra_scenes_are_discarded(self):
        raws = [raw_scene(f"scene {i}") for i in range(4)]
        scenes = map_batch_scenes(raws, BatchRange(1, 3), CHARACTERS)
        assert [scene.description for scene in scenes] == ["scene 0", "scene 1", "scene 2"]

    def test_too_few_scenes_fail_the_batch(self):
        with pytest.raises(MalformedResponseError):
            map_batch_scenes([raw_scene()], BatchRange(1, 2), CHARACTERS)
