import re
from typing import List, Optional, Tuple

from .config import RunConfig
from .models import ART_PHASE, FINAL_PHASE, PageRecord, ReferenceImage, ReviewResult
from .story_parser import extract_dialogue

# Reasons that only concern colour or lettering, which the art phase of a two-phase run does not produce
ART_PHASE_IGNORED_REASONS = ("target format: full color", "lack of color", "black and white", "lettering", "typo")

FACE_WORDS = ("face", "facial", "eyes", "likeness", "look like", "older", "younger")
HAIR_WORDS = ("hair", "hairstyle")
STYLE_WORDS = ("style", "rendering")
TEXT_WORDS = ("text", "gibberish", "lettering", "spelling")
BUBBLE_WORDS = ("bubble", "text", "lettering")

FACE_FIX = ("- [FACE IDENTITY FIX]: The previous face was WRONG. You must COPY the facial features from the "
            "Reference Image labeled with the character's name. MATCH THE EYE SHAPE AND JAWLINE EXACTLY. "
            "Do not stylize into a generic face.")
HAIR_FIX = ("- [HAIR FIX]: The hairstyle was WRONG. Look at the Reference Image and copy the hair volume, bangs, "
            "and parting EXACTLY.")
STYLE_FIX = ("- [STYLE FIX]: The art style was inconsistent. Ensure line weight and shading match the "
             "'Previous Page Reference'.")
TEXT_FIX = ('- [TEXT FIX]: The previous text was incorrect or gibberish. You MUST use the EXACT text from the '
            '"Story Script". Do NOT hallucinate words. Ensure every bubble is filled with legible text matching the script.')

ART_INSTRUCTIONS = """[INSTRUCTION]
Use the attached images as strict visual references.
1. **Characters**: **STRICTLY COPY** the facial features and hairstyle from the attached reference images.
   - The attached reference images are the **GROUND TRUTH** for the character's **FACE AND HAIR**. You must generate the **SAME PERSON**.
   - If the character's face in the "Previous Page Reference" differs from the "Character Sheet", follow the "Character Sheet" exactly.
   - **COSTUME**: If the text describes a specific outfit, the **TEXT OVERRIDES THE IMAGE** for clothing. Otherwise follow the clothing shown in the Character Sheet.
   - **DO NOT GENERATE RANDOM CHARACTERS**. If a character name matches a reference image, use that reference strictly.
2. **Environments**: The attached "Far View" image is your STRICT VISUAL ANCHOR for the location's layout, furniture placement, and atmosphere.
3. **Continuity**: If a "Previous Page reference" is attached, ensure seamless continuity. Do not teleport furniture."""

TWO_PHASE_ART_BLOCK = """[TWO-PHASE GENERATION: ART PHASE]
IMPORTANT: This is the ART PHASE. Generate the panels and art but **STRICTLY PROHIBITED: NO ROUND SPEECH BUBBLES**.
- The entire frame must be filled with character and environment art.
- NOTE: Rectangular caption boxes, sound effects (SFX), and incidental text on artifacts ARE ALLOWED.
- Dialogue lines in the script are used ONLY for expressions, poses, and actions. DO NOT render the dialogue text.
- Focus entirely on character likeness, composition, and environment."""

LETTERING_INSTRUCTIONS = """INSTRUCTIONS:
1. **Create Dialogue Bubbles**: Analyze the script and the panels in the attached art. Create speech bubbles and caption boxes that fit the dialogue and composition.
2. **Sequential Mapping**: Map the dialogue lines in the script to the bubbles you create in reading order.
3. **Lettering**: Render ALL dialogue and captions into the bubbles/boxes in professional manga lettering. Text must be centered and legible.
4. **Verification**: EVERY line of dialogue and EVERY caption from the script MUST be present.
5. **NO HALLUCINATIONS**: Do NOT add random text, gibberish, or text not found in the script. Check for typos.
6. **CLEANUP & DEDUPLICATION**: COVER any "ghost" bubbles, faint text, or artifacts from the drawing phase. The same line must never appear twice."""


def keyword_fixes(reason: str) -> List[str]:
    """Targeted fix templates for the problems a review reason names."""
    reason_lower = (reason or "").lower()
    fixes = []
    if any(word in reason_lower for word in FACE_WORDS):
        fixes.append(FACE_FIX)
    if any(word in reason_lower for word in HAIR_WORDS):
        fixes.append(HAIR_FIX)
    if any(word in reason_lower for word in STYLE_WORDS):
        fixes.append(STYLE_FIX)
    if any(word in reason_lower for word in TEXT_WORDS):
        fixes.append(TEXT_FIX)
    return fixes


def mentions_bubbles(reason: str) -> bool:
    reason_lower = (reason or "").lower()
    return any(word in reason_lower for word in BUBBLE_WORDS)


def dialogue_checklist(script: str) -> str:
    lines = extract_dialogue(script)
    if not lines:
        return ""
    numbered = "\n".join(f"{index}. {line}" for index, line in enumerate(lines, 1))
    return ("[MANDATORY DIALOGUE CHECKLIST]\n"
            "You MUST include the following dialogue lines EXACTLY as written. Do not skip any:\n"
            f"{numbered}\n"
            "Double-check that ALL lines above are present in the final image.")


def reference_mapping(references: List[ReferenceImage]) -> str:
    """Table binding entity tags to attached images so named entities can be told apart."""
    rows = [f'- Tag: "{ref.tag or ref.label}" matches Reference Image: "{ref.label}"' for ref in references]
    return ("[STRICT REFERENCE MAPPING]\n"
            "The following images are attached. You MUST use the specific image when the corresponding Name/Tag "
            "appears in the story:\n"
            + ("\n".join(rows) if rows else "- (no reference images attached)")
            + "\n\n[INSTRUCTION]\nWhen you see a Tag in the text (e.g., 'Kenji enters'), look up the corresponding "
              "'Reference Image' above and Apply it STRICTLY.")


def captioned(image: ReferenceImage, caption: str) -> ReferenceImage:
    return ReferenceImage(image.source_label, image.data, image.mime_type, image.tag, caption=caption)


class PromptBuilder:
    """Builds the prompt text and attachment list for one generation attempt."""

    def __init__(self, config: RunConfig):
        self.config = config

    def active_failures(self, prior_failures: List[str], phase: int) -> List[str]:
        if not (self.config.two_phase and phase == ART_PHASE):
            return list(prior_failures)
        return [r for r in prior_failures if not any(word in r.lower() for word in ART_PHASE_IGNORED_REASONS)]

    def build(self, page: PageRecord, global_context: str, references: List[ReferenceImage],
              prior_failures: List[str], phase: int, correction: Optional[str] = None,
              previous_page: Optional[ReferenceImage] = None, previous_header: Optional[str] = None,
              failed_attempt: Optional[ReferenceImage] = None, art_image: Optional[ReferenceImage] = None,
              art_prompt: Optional[str] = None) -> Tuple[str, List[ReferenceImage]]:
        """Return (prompt_text, attachments) for the given phase."""
        if self.config.two_phase and phase == FINAL_PHASE:
            return self._lettering(page, global_context, references, prior_failures, correction,
                                   art_image, art_prompt, failed_attempt)
        return self._art(page, global_context, references, prior_failures, phase, correction,
                         previous_page, previous_header, failed_attempt)

    def _context_blocks(self, page: PageRecord, global_context: str) -> List[str]:
        return [
            f"{self.config.scene_prompt}, {self.config.style} manga style, {self.config.aspect_ratio_instruction}",
            f"[GLOBAL CONTEXT]\n{global_context}",
            f"[CURRENT PAGE: {page.header}]\n{page.content.strip()}",
        ]

    def _failure_blocks(self, prior_failures: List[str], phase: int,
                        failed_attempt: Optional[ReferenceImage]) -> List[str]:
        blocks = []
        reasons = self.active_failures(prior_failures, phase)
        if reasons:
            blocks.append("[CRITICAL WARNING: PAST FAILURES]\n"
                          "This page has failed previously. You MUST avoid the following errors:\n"
                          + "\n".join(f"- {r}" for r in reasons)
                          + "\nPAY EXTRA ATTENTION TO THESE SPECIFIC ISSUES.")
        if failed_attempt is not None:
            blocks.append('[PREVIOUS ATTEMPT REFERENCE]\nSee attached "Reference: Previous Attempt". Its text was '
                          "incorrect, but the BUBBLE LAYOUT might be useful as a layout guide.")
        return blocks

    def _art(self, page, global_context, references, prior_failures, phase, correction,
             previous_page, previous_header, failed_attempt) -> Tuple[str, List[ReferenceImage]]:
        blocks = self._context_blocks(page, global_context)
        blocks.extend(self._failure_blocks(prior_failures, phase, failed_attempt))
        blocks.append(ART_INSTRUCTIONS)

        title = re.sub(r"^[#\s]+", "", page.header)
        if self.config.two_phase:
            blocks.append("4. **Text & Bubbles**: DO NOT generate any round speech bubbles. (Rectangular captions, "
                          "sound effects, and background text are PERMITTED.)")
            blocks.append("[STYLE MANDATE: ART PHASE]\nGENERATE THIS PAGE IN BLACK AND WHITE. Use professional manga "
                          "line art, screentones, and traditional shading. NO COLOR.")
            blocks.append(TWO_PHASE_ART_BLOCK)
        else:
            blocks.append(f'4. **Text & Bubbles**: Do NOT render the page title ("{title}") as text in the image. '
                          "Render the script's dialogue in speech bubbles and its captions in caption boxes.")
            if self.config.color:
                blocks.append("[STRICT COLOR MANDATE]\nGENERATE THIS PAGE IN FULL COLOR. Match the EXACT color "
                              "palette (hair, skin tone, eyes, clothing) from the attached Reference Images.")

        blocks.append(reference_mapping(references))

        attachments: List[ReferenceImage] = []
        if failed_attempt is not None:
            attachments.append(captioned(failed_attempt, "Reference: Previous Attempt (Bad Text/Layout)"))
        attachments.extend(captioned(ref, f'Reference image for: "{ref.label}"') for ref in references)
        if previous_page is not None:
            attachments.append(captioned(previous_page, "Reference: Previous Page"))
            blocks.append(f'[PREVIOUS PAGE REFERENCE]\nThe attached image "Reference: Previous Page" is the '
                          f"immediately preceding page ({previous_header or 'previous'}). Maintain strict visual "
                          "continuity with it regarding environment, lighting, and character positioning.")

        if correction:
            blocks.append(correction)
        return "\n\n".join(blocks), attachments

    def _lettering(self, page, global_context, references, prior_failures, correction,
                   art_image, art_prompt, failed_attempt) -> Tuple[str, List[ReferenceImage]]:
        color = self.config.color
        blocks = self._context_blocks(page, global_context)
        blocks.append("You are a professional manga editor and artist.\n"
                      "Task: Add dialogue bubbles and text from the story script onto the attached manga page art."
                      + ("\nAlso, COLORIZE the page using the provided reference images." if color else ""))
        blocks.append(f'STORY SCRIPT FOR {page.header}:\n"{page.content.strip()}"')
        checklist = dialogue_checklist(page.content)
        if checklist:
            blocks.append(checklist)
        if art_prompt:
            blocks.append("[VISUAL CONTEXT FROM ART PHASE]\nThe attached \"Generated Image\" was created with this "
                          f'description. Use it for the intended lighting and atmosphere:\n"{art_prompt}"')
        blocks.extend(self._failure_blocks(prior_failures, FINAL_PHASE, failed_attempt))
        blocks.append(LETTERING_INSTRUCTIONS)
        if color:
            blocks.append("7. **Colorization**: The attached page is in Black and White. You MUST colorize it.\n"
                          "   - Use the attached portraits to match the EXACT hair, eye, skin, and costume colors.\n"
                          '   - Use the "Far View" environment reference for background colors.')
        else:
            blocks.append("7. **Maintain Style**: Keep the final output in professional Black and White manga style "
                          "(screentones, ink). Do NOT add any color.")
        blocks.append("8. **Art Integrity**: Maintain the original character likenesses and composition from the "
                      "attached art. Do NOT redraw the panels, only overlay the bubbles, text, and color.")
        blocks.append(reference_mapping(references))
        if correction:
            blocks.append(correction)

        attachments: List[ReferenceImage] = []
        if art_image is not None:
            attachments.append(captioned(art_image, "Generated Image (Phase 1 art):"))
        if failed_attempt is not None:
            attachments.append(captioned(failed_attempt, "Reference: Previous Attempt (Bad Text/Layout)"))
        attachments.extend(captioned(ref, f'Reference image for: "{ref.label}"') for ref in references)
        return "\n\n".join(blocks), attachments

    # --- Corrections --- #

    def correction(self, review: ReviewResult, phase: int) -> str:
        """Correction block for the next attempt, built from the latest rejection."""
        fixes = keyword_fixes(review.reason)
        if self.config.two_phase and phase == ART_PHASE:
            lines = ["[CRITICAL ART CORRECTION]", f"Previous Art rejected: {review.reason}",
                     "Fix likeness and ENSURE NO ROUND SPEECH BUBBLES. (Rectangular captions, SFX, and background "
                     "text are okay)."]
            return "\n".join(lines + fixes)

        lines = ["[CRITICAL CORRECTION REQUIRED]",
                 f"The previous generation was REJECTED (Score: {review.total_score:g}/400).",
                 f"**FAILURE REASON**: {review.reason}",
                 "**INSTRUCTION**: You MUST fix the specific issue identified above."]
        lines.extend(fixes)
        lines.append('- If the environment was wrong, align with the "Far View" anchor.')
        return "\n".join(lines)

    def art_remark_correction(self, review: ReviewResult) -> Optional[str]:
        """A passed art review that still mentions bubbles or text becomes an instruction for lettering."""
        if not mentions_bubbles(review.reason):
            return None
        return (f'[CORRECTION INSTRUCTION]\nThe input image has a flaw: "{review.reason}".\n'
                "Fix this by placing a correct dialogue bubble OVER the erroneous artifact or ensuring the final "
                "composition hides it.")
