import json
import re
from typing import Any, List, Optional

from loguru import logger

from .errors import ReviewParseError
from .models import (
    CONTINUITY,
    LETTERING,
    LIKENESS,
    STORY,
    PhaseFlags,
    ReferenceImage,
    ReviewResult,
)

CODE_FENCE_RE = re.compile(r"```(?:json)?\s*\n?|\n?```")


def is_character_reference(image: ReferenceImage) -> bool:
    label = image.source_label.replace("\\", "/")
    return "characters/" in label or "_portrait" in label


def build_review_prompt(story_context: str, phase_flags: PhaseFlags) -> str:
    """Scoring instructions for the QA model. Asks for a JSON score sheet."""
    is_phase1 = phase_flags.is_phase1
    special_key = "no_bubbles_score" if is_phase1 else "lettering_score"

    phase_line = (
        "PHASE: ART PHASE (No Speech Bubbles allowed. Note: Captions, sound effects, and background text are PERMITTED.)"
        if is_phase1 else "PHASE: FINAL PHASE (Lettering/Color included)"
    )
    format_line = (
        'TARGET FORMAT: FULL COLOR. (If the Story Description says "black and white", IGNORE IT. The user requested COLOR.)'
        if phase_flags.is_color else "TARGET FORMAT: BLACK AND WHITE (Manga Style)."
    )
    if is_phase1:
        lettering_criterion = (
            "NO SPEECH BUBBLES (100% max): Does the image contain any round SPEECH BUBBLES or THOUGHT BUBBLES? "
            "These are forbidden. Rectangular caption boxes, sound effects (SFX), and incidental text on "
            "objects/walls are PERMITTED."
        )
        lettering_penalty = (
            "- [STRICT] SPEECH BUBBLES: If ANY round speech bubble or thought bubble is found, the "
            "no_bubbles_score MUST be below 40%."
        )
    else:
        lettering_criterion = (
            "Lettering & Text (100% max): Are ALL speech bubbles and caption boxes filled with the CORRECT text "
            "from the Story Description? Check for GIBBERISH, MISSING DIALOGUE and ALTERED TEXT. The text must "
            "match the script WORD-FOR-WORD."
        )
        lettering_penalty = (
            "- [STRICT] TEXT ACCURACY: If ANY text is missing, gibberish, or paraphrased, the lettering_score "
            "MUST be below 40%.\n"
            "- [STRICT] NO DUPLICATES: If the same line of dialogue appears twice, the lettering_score MUST be below 60%."
        )
    if phase_flags.is_color:
        color_penalty = (
            "- [CONDITIONAL] COLOR CONSISTENCY: In the art phase IGNORE ALL COLOR MISMATCHES. In the final phase "
            "compare hair/eye/costume colors against color references (likeness_score < 60% if mismatched)."
        )
    else:
        color_penalty = (
            '- [STRICT] COLOR: If the image is in Color despite "TARGET FORMAT: BLACK AND WHITE", the story_score '
            "MUST be below 50%."
        )

    return f"""You are a strict Quality Assurance AI for a manga production pipeline.
Task: Compare the "Generated Image" with the provided "Reference Images" (including "Previous Page Reference" if available) AND the "Story Description".

{phase_line}
{format_line}

STORY DESCRIPTION / CONTEXT:
"{story_context or 'No specific story text provided.'}"

EVALUATION CRITERIA (Scored out of 100% each):
1. [CRITICAL] Character Design & Identity (100% max): Does the character look EXACTLY like the main Character Reference sheet? Check eye shape, hair style/bangs, facial structure, BODY TYPE, and COSTUME.
2. [CRITICAL] Continuity (100% max): Does the overall visual style (line weight, shading, lighting) match the "Previous Page Reference"?
3. [CRITICAL] {lettering_criterion}
4. [CRITICAL] Story Accuracy & Panel Layout (100% max): Does the image match the Story Description (actions, emotions, items) AND the PANEL LAYOUT?

TOTAL POSSIBLE SCORE: 400%.

CRITICAL PENALTIES:
{lettering_penalty}
{color_penalty}
- [STRICT] PANEL LAYOUT: If the script asks for a 3-panel stack but the image is a single splash, the story_score MUST be below 50%.
- If the visual style clashes with the "Previous Page Reference", the continuity_score MUST be below 80%.
- [STRICT] FACIAL IDENTITY: If it looks like a different person from the Character Reference, the likeness_score MUST be below 60%.
- [STRICT] HAIR: The hairstyle (bangs, length, volume) must match the Main Reference exactly. If the hair is different, the likeness_score MUST be below 60%.
- [STRICT] CLOTHING: The costume DESIGN must be consistent with the reference UNLESS the Story Description explicitly describes a different outfit.

Output strictly in JSON format:
{{
    "likeness_score": number,
    "continuity_score": number,
    "{special_key}": number,
    "story_score": number,
    "total_score": number,
    "reason": "string",
    "pass": boolean
}}"""


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_review(raw_text: Optional[str], phase_flags: PhaseFlags) -> ReviewResult:
    """Turn the model's JSON answer into a ReviewResult. Missing scores count as 0."""
    if not raw_text or not raw_text.strip():
        raise ReviewParseError("No response from review model")

    cleaned = CODE_FENCE_RE.sub("", raw_text).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ReviewParseError(f"Review failed to parse JSON response: {e}", raw_text)
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if not isinstance(data, dict):
        raise ReviewParseError("Review response is not a JSON object", raw_text)

    special_key = "no_bubbles_score" if phase_flags.is_phase1 else "lettering_score"
    return ReviewResult(
        sub_scores={
            LIKENESS: _number(data.get("likeness_score")),
            CONTINUITY: _number(data.get("continuity_score")),
            LETTERING: _number(data.get(special_key)),
            STORY: _number(data.get("story_score")),
        },
        total_score=_number(data.get("total_score")),
        reason=str(data.get("reason") or "No reason provided."),
        pass_flag=bool(data.get("pass", False)),
    )


def perfect_review(reason: str) -> ReviewResult:
    return ReviewResult(
        sub_scores={LIKENESS: 100, CONTINUITY: 100, LETTERING: 100, STORY: 100},
        total_score=400,
        reason=reason,
        pass_flag=True,
    )


class GeminiReviewer:
    """ReviewService that scores candidates with a multimodal Gemini model."""

    def __init__(self, client, model: Optional[str] = None):
        self.client = client
        self.model = model or client.models["review"]

    def review(self, candidate: bytes, references: List[ReferenceImage],
               story_context: str, phase_flags: PhaseFlags) -> ReviewResult:
        if not any(is_character_reference(ref) for ref in references):
            logger.info("No character references found for review. Skipping.")
            return perfect_review("No references to check against.")

        attachments = [ReferenceImage("generated.png", candidate, caption="Generated Image:")]
        attachments.extend(
            ReferenceImage(ref.source_label, ref.data, ref.mime_type, ref.tag, caption=f"Reference ({ref.label}):")
            for ref in references
        )

        logger.info(f"Auto-reviewing generated image with {self.model} against {len(references)} reference(s)")
        raw_text = self.client.generate_text(
            build_review_prompt(story_context, phase_flags),
            model=self.model,
            attachments=attachments,
            json_output=True,
        )
        return parse_review(raw_text, phase_flags)


def review_summary(result: ReviewResult, phase_flags: PhaseFlags) -> str:
    """One-line score report used in the run log."""
    phase_label = "Art" if phase_flags.is_phase1 else "Final"
    special_label = "NoBubbles" if phase_flags.is_phase1 else "Lettering"
    return (
        f"[Auto-Review {phase_label}] Total: {result.total_score}/400% "
        f"(Likeness: {result.score(LIKENESS)}%, Continuity: {result.score(CONTINUITY)}%, "
        f"Story: {result.score(STORY)}%, {special_label}: {result.score(LETTERING)}%). Reason: {result.reason}"
    )
