import base64
import binascii
import json
import os
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from loguru import logger

from .config import model_settings
from .errors import (
    AuthenticationError,
    ConfigurationError,
    GenerationError,
    QuotaExceededError,
    TransientGenerationError,
)
from .models import GenerationConstraints, GenerationOutput, ReferenceImage

API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
REQUEST_TIMEOUT = 300


def classify_error(status_code: Optional[int], message: str) -> GenerationError:
    """Map an HTTP status and error text onto the pipeline's error taxonomy."""
    lowered = message.lower()
    if status_code in (401, 403) or "api key not valid" in lowered or "permission denied" in lowered:
        return AuthenticationError(f"Authentication failed: {message}", {"status": status_code})
    if status_code == 429 or "quota" in lowered or "resource_exhausted" in lowered:
        return QuotaExceededError(f"API quota exceeded: {message}", {"status": status_code})
    return TransientGenerationError(f"API request failed: {message}", {"status": status_code})


class APIClient:
    """Gemini REST client used for page art, lettering, text extraction and reviews."""

    def __init__(self, models: Optional[Dict[str, str]] = None, api_key: Optional[str] = None):
        load_dotenv()

        self.models = models or model_settings()

        self.debug_enable_prompt = os.getenv("DEBUG_ENABLE_PROMPT", "false").lower() == "true"
        self.debug_enable_response = os.getenv("DEBUG_ENABLE_RESPONSE", "false").lower() == "true"

        self.api_key = api_key or self._initialize_api_key()
        self.session = requests.Session()

    def _initialize_api_key(self) -> str:
        """Initialize and validate the API key."""
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")

        if not api_key:
            raise ConfigurationError("API key not found. Please set it as GEMINI_API_KEY environment variable.")

        if not api_key.startswith("AI") and not len(api_key) > 30:
            logger.warning("API key doesn't match typical Google Gemini API key format. This might cause authentication issues.")

        return api_key

    def get_api_url(self, model_name: str) -> str:
        return API_URL.format(model=model_name)

    def make_request(self, model_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """POST a generateContent request, raising the classified error on failure."""
        if self.debug_enable_prompt:
            self._log_prompt_debug(data)

        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }
        try:
            response = self.session.post(self.get_api_url(model_name), headers=headers, json=data, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {e}")
            raise classify_error(None, str(e))

        if response.status_code != 200:
            self._handle_error_response(response)

        try:
            response_json = response.json()
        except ValueError as e:
            raise TransientGenerationError(f"API returned a non-JSON body: {e}")

        if self.debug_enable_response:
            self._log_response_debug(response_json)
        return response_json

    def _handle_error_response(self, response: requests.Response) -> None:
        """Raise the error matching a non-200 response."""
        message = response.text
        try:
            error_json = response.json()
            if "error" in error_json:
                message = error_json["error"].get("message", message)
        except ValueError:
            pass

        error = classify_error(response.status_code, message)
        logger.error(f"API request failed with status code {response.status_code}: {message}")
        raise error

    # --- Debug output --- #

    def _log_prompt_debug(self, data: Dict[str, Any]) -> None:
        logger.info("===== PROMPT DEBUGGING =====")
        for i, part in enumerate(data["contents"][0]["parts"]):
            if "text" in part:
                logger.info(f"PROMPT TEXT PART {i}:\n{part['text']}\n")
            elif "inlineData" in part:
                logger.info(f"PROMPT PART {i}: [INLINE DATA - {part['inlineData']['mimeType']}]")
        logger.info("===== END PROMPT DEBUGGING =====")

    def _log_response_debug(self, response_json: Dict[str, Any]) -> None:
        logger.info("===== RESPONSE DEBUGGING =====")
        for idx, candidate in enumerate(response_json.get("candidates", [])):
            parts = candidate.get("content", {}).get("parts", [])
            logger.info(f"Candidate {idx + 1}: {len(parts)} part(s), finishReason={candidate.get('finishReason')}")
            for part in parts:
                if "text" in part:
                    text_preview = part["text"][:100] + "..." if len(part["text"]) > 100 else part["text"]
                    logger.info(f"    Text preview: {text_preview}")
                if "inlineData" in part:
                    logger.info(f"    Inline data: {part['inlineData'].get('mimeType')}, length: {len(part['inlineData'].get('data', ''))}")
        if "promptFeedback" in response_json:
            logger.info(f"Prompt feedback: {json.dumps(response_json['promptFeedback'], default=str)[:500]}")
        logger.info("===== END RESPONSE DEBUGGING =====")

    # --- Request building --- #

    @staticmethod
    def build_parts(prompt: str, attachments: List[ReferenceImage]) -> List[Dict[str, Any]]:
        """Prompt text first, then each image preceded by its caption."""
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for image in attachments:
            parts.append({"text": image.caption or f"Reference: {image.label}"})
            parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.to_base64()}})
        return parts

    @staticmethod
    def safety_settings(constraints: GenerationConstraints) -> List[Dict[str, str]]:
        return [{"category": category, "threshold": threshold} for category, threshold in constraints.safety_thresholds]

    # --- GenerationService --- #

    def generate(self, prompt: str, attachments: List[ReferenceImage],
                 constraints: GenerationConstraints) -> GenerationOutput:
        """Generate one image. An empty GenerationOutput means the model returned no image."""
        model = constraints.model or self.models["art"]
        logger.info(f"Generating image with {model} - {len(attachments)} reference image(s)")

        generation_config: Dict[str, Any] = {"responseModalities": list(constraints.response_modalities)}
        if "IMAGE" in constraints.response_modalities:
            generation_config["imageConfig"] = {"aspectRatio": constraints.aspect_ratio}

        data = {
            "contents": [{"role": "user", "parts": self.build_parts(prompt, attachments)}],
            "generationConfig": generation_config,
            "safetySettings": self.safety_settings(constraints),
        }
        return self._extract_output(self.make_request(model, data))

    def generate_text(self, prompt: str, model: Optional[str] = None,
                      attachments: Optional[List[ReferenceImage]] = None, json_output: bool = False) -> str:
        """Text-only request. Returns the concatenated text parts."""
        generation_config: Dict[str, Any] = {}
        if json_output:
            generation_config["responseMimeType"] = "application/json"
        data: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": self.build_parts(prompt, attachments or [])}],
        }
        if generation_config:
            data["generationConfig"] = generation_config

        response = self.make_request(model or self.models["extract"], data)
        output = self._extract_output(response, expect_image=False)
        if not output.text:
            raise TransientGenerationError("Model returned no text")
        return output.text

    def _extract_output(self, response: Dict[str, Any], expect_image: bool = True) -> GenerationOutput:
        output = GenerationOutput()
        texts = []
        for candidate in response.get("candidates", []):
            for part in candidate.get("content", {}).get("parts", []):
                inline = part.get("inlineData")
                if inline and inline.get("data") and output.image is None:
                    try:
                        output.image = base64.b64decode(inline["data"])
                        output.mime_type = inline.get("mimeType", "image/png")
                    except (binascii.Error, ValueError):
                        logger.warning("Found image part but data is not valid base64")
                elif "text" in part:
                    texts.append(part["text"])

        if texts:
            output.text = "".join(texts)
        if expect_image and output.image is None:
            block_reason = response.get("promptFeedback", {}).get("blockReason")
            if block_reason:
                logger.warning(f"Request was blocked: {block_reason}")
            else:
                logger.warning("No valid image data found in any response candidates.")
        return output
