"""
Prompt text and structured-output schemas for the generation service.
"""

from typing import Optional, Sequence

from .units import BatchRange, Character, Scene

CHARACTER_SCHEMA = {
    "type": "object",
    "properties": {
        "characters": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "role": {"type": "string"},
                    "visualDescription": {
                        "type": "string",
                        "description": "Detailed appearance for image prompts: hair, eyes, "
                                       "clothing, age, build."
                    },
                    "personality": {"type": "string"}
                },
                "required": ["name", "role", "visualDescription", "personality"],
                "additionalProperties": False
            }
        }
    },
    "required": ["characters"],
    "additionalProperties": False
}

STORYBOARD_SCHEMA = {
    "type": "object",
    "properties": {
        "scenes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "description": {"type": "string", "description": "Summary of the scene."},
                    "subjectAndComposition": {
                        "type": "string",
                        "description": "Who or what is in frame, shot size and camera angle."
                    },
                    "setting": {
                        "type": "string",
                        "description": "Location, time of day, weather and lighting."
                    },
                    "action": {"type": "string", "description": "Movement of the subject."},
                    "emotion": {"type": "string", "description": "Expression and state of mind."},
                    "charactersInScene": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Names of the characters appearing in this scene."
                    },
                    "originalScriptExcerpt": {
                        "type": "string",
                        "description": "A short verbatim excerpt of the script this scene covers."
                    }
                },
                "required": [
                    "description", "subjectAndComposition", "setting", "action",
                    "emotion", "charactersInScene", "originalScriptExcerpt"
                ],
                "additionalProperties": False
            }
        },
        "coverageVerification": {
            "type": "string",
            "description": "Confirm that the generated range matches the requested share of "
                           "the script, and that scene #1 starts at the very beginning."
        }
    },
    "required": ["scenes", "coverageVerification"],
    "additionalProperties": False
}

NEGATIVE_PROMPT = (
    "text, subtitles, captions, lower thirds, news ticker, tv interface, watermark, "
    "logo, typography, letters, movie credits, date stamp, speech bubble, borders"
)


def build_character_prompt(scenario: str) -> str:
    return (
        "You are a film director's assistant. Analyse the script below and extract "
        "the main characters. For each, write a visualDescription detailed enough "
        "to generate consistent photorealistic portraits (hair style and colour, "
        "eye colour, clothing, age, build).\n\n"
        f"Script:\n{scenario}"
    )


def build_storyboard_prompt(
    scenario: str,
    characters: Sequence[Character],
    total_units: int,
    batch: BatchRange,
    continuity: str = ""
) -> str:
    """Prompt for one storyboard batch.

    The first batch is told to start at the very first line of the script;
    later batches get the continuity preamble instead.
    """
    start_percent = round((batch.start - 1) / total_units * 100)
    end_percent = round(batch.end / total_units * 100)
    cast = "\n".join(f"{c.name}: {c.visual_description}" for c in characters)

    sections = [
        "Create a detailed storyboard for a video from the script and characters below.",
        f"[Overall plan]\nThe whole script is told in exactly {total_units} cuts, "
        "paced evenly from the first line to the last.",
        f"[This task]\nScenes #{batch.start} to #{batch.end} ({batch.size} cuts). "
        f"This covers the part of the story from {start_percent}% to {end_percent}%. "
        f"Locate that part of the script and divide it evenly into {batch.size} cuts.",
        "[Required]\n"
        "1. Scene #1 must begin with the very first line of the script. Never skip the introduction.\n"
        "2. Every scene should show at least one character, except pure establishing shots.\n"
        "3. originalScriptExcerpt must quote the script text the scene is based on.\n"
        "4. One image per scene; no collage or multi-panel frames.",
    ]
    if continuity:
        sections.append(continuity)
    sections.append(f"Characters:\n{cast}")
    sections.append(f"Script:\n{scenario}")
    return "\n\n".join(sections)


def build_portrait_prompt(character: Character) -> str:
    return (
        "Generate a photorealistic portrait.\n"
        f"Identity anchor: {character.name}\n"
        f"Visuals: {character.visual_description}\n"
        "Style: photorealistic, cinematic lighting, neutral background. Shot: medium close-up.\n"
        "No text, captions or watermarks."
    )


def build_scene_image_prompt(
    scene: Scene,
    characters: Sequence[Character],
    reference: Optional[Character] = None
) -> str:
    """Prompt for a final 16:9 scene image.

    A non-empty ``custom_prompt`` on the scene replaces the generated scene
    details.
    """
    lines = [
        "TASK: Generate a photorealistic 16:9 cinematic shot from the scene details below. "
        "Keep every character consistent with its identity anchor."
    ]

    in_scene = [c for c in characters if c.id in scene.characters_in_scene]
    if in_scene:
        lines.append("Identity anchors:")
        lines.extend(f"- {c.name}: {c.visual_description}" for c in in_scene)

    lines.append("### SCENE DETAILS ###")
    if scene.custom_prompt and scene.custom_prompt.strip():
        lines.append(f"Detailed instruction: {scene.custom_prompt}")
    else:
        lines.append(f"Context: {scene.description}")
        lines.append(f"Location/Time/Weather: {scene.setting}")
        lines.append(f"Subject & Composition: {scene.subject_and_composition}")
        lines.append(f"Action: {scene.action}")
        lines.append(f"Emotion: {scene.emotion}")

    lines.append("### STYLE ###")
    lines.append("Photorealistic cinematic photography, highly detailed, cinematic colour grading.")
    lines.append(f"NEGATIVE PROMPT (strictly forbidden): {NEGATIVE_PROMPT}.")
    lines.append("The image must be completely free of text.")

    if reference is not None:
        lines.append(
            f"(Reference image provided for {reference.name}. "
            "Use it for facial structure and consistency.)"
        )
    return "\n".join(lines)
