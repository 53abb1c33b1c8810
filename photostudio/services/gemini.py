"""
Gemini Image Generation Service (google-genai SDK)
"""
import logging
import time
from typing import Dict, List, Optional

from google import genai
from google.genai import errors, types

from photostudio.exceptions import (
    ContentPolicyError,
    ImageGenerationError,
    MissingCredentialsError,
    TransientGenerationError,
)
from photostudio.services.ai_backend import (
    PRODUCT_ANALYSIS_PROMPT,
    GeneratedImage,
    ImageBackend,
    detect_mime_type,
    detect_refusal,
    enhance_prompt,
    load_image_bytes,
    parse_analysis,
)

logger = logging.getLogger(__name__)

SAFETY_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST", "SPII"}


def _classify_api_error(e: errors.APIError) -> Exception:
    code = getattr(e, "code", None) or 0
    message = str(e)
    if code == 429 or code >= 500:
        return TransientGenerationError(f"Gemini API error {code}: {message}")
    if code in (401, 403):
        return MissingCredentialsError(f"Gemini rejected credentials ({code})")
    if "safety" in message.lower() or "policy" in message.lower():
        return ContentPolicyError(f"Gemini refused the prompt: {message}")
    return ImageGenerationError(f"Gemini API error {code}: {message}")


class GeminiImageBackend(ImageBackend):
    """Image generation and product analysis via Google Gemini"""

    name = "gemini"

    def __init__(self, api_key: str, model: str, vision_model: Optional[str] = None, timeout: float = 180.0):
        super().__init__(model, vision_model)
        if not api_key:
            raise MissingCredentialsError("GEMINI_API_KEY is not configured")
        self.client = genai.Client(api_key=api_key, http_options={"timeout": int(timeout * 1000)})

    async def generate_image(
        self,
        prompt: str,
        aspect_ratio: Optional[str] = None,
        resolution: Optional[str] = None,
        model: Optional[str] = None
    ) -> GeneratedImage:
        """
        Generate one image.

        Raises:
            TransientGenerationError: 429/5xx or no image in the answer
            ContentPolicyError: Model refused or the output was blocked
            MissingCredentialsError: Key rejected
            ImageGenerationError: Any other API error
        """
        model_name = model or self.model
        enhanced_prompt = enhance_prompt(prompt, aspect_ratio, resolution)
        start_time = time.time()

        logger.info(
            f"Gemini generation: model={model_name}, aspect_ratio={aspect_ratio}, "
            f"resolution={resolution}, prompt={prompt[:120]}..."
        )

        image_config = {}
        if aspect_ratio:
            image_config["aspect_ratio"] = aspect_ratio
        if resolution:
            image_config["image_size"] = resolution.upper()

        try:
            response = await self.client.aio.models.generate_content(
                model=model_name,
                contents=enhanced_prompt,
                config=types.GenerateContentConfig(
                    response_modalities=["TEXT", "IMAGE"],
                    image_config=types.ImageConfig(**image_config) if image_config else None,
                ),
            )
        except errors.APIError as e:
            raise _classify_api_error(e)

        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise ContentPolicyError(f"Prompt blocked: {feedback.block_reason}")

        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            raise TransientGenerationError("Gemini returned no candidates")

        candidate = candidates[0]
        finish_reason = getattr(candidate, "finish_reason", None)
        finish_name = getattr(finish_reason, "name", str(finish_reason or ""))
        if finish_name in SAFETY_FINISH_REASONS:
            raise ContentPolicyError(f"Generation stopped: {finish_name}")

        text_parts = []
        parts = candidate.content.parts if candidate.content and candidate.content.parts else []
        for part in parts:
            if getattr(part, "inline_data", None) is not None and part.inline_data.data:
                mime_type = part.inline_data.mime_type or detect_mime_type(part.inline_data.data, "image/png")
                elapsed = time.time() - start_time
                logger.info(f"Gemini image generated in {elapsed:.1f}s ({len(part.inline_data.data)} bytes)")
                return GeneratedImage(part.inline_data.data, mime_type, " ".join(text_parts) or None)
            if getattr(part, "text", None):
                text_parts.append(part.text)

        text = " ".join(text_parts)
        detect_refusal(text)
        logger.error(f"No image in Gemini response. Text: {text[:200]}")
        raise TransientGenerationError("Gemini returned no image")

    async def analyze_images(self, image_urls: List[str], context: Optional[str] = None) -> Dict:
        """Analyze product images into a structured specification"""
        if not image_urls:
            raise ImageGenerationError("No images to analyze")

        contents = [PRODUCT_ANALYSIS_PROMPT if not context else f"{PRODUCT_ANALYSIS_PROMPT}\n\nContext: {context}"]
        for url in image_urls:
            image_bytes = await load_image_bytes(url)
            contents.append(types.Part.from_bytes(data=image_bytes, mime_type=detect_mime_type(image_bytes)))

        logger.info(f"Gemini analysis: model={self.vision_model}, images={len(image_urls)}")

        try:
            response = await self.client.aio.models.generate_content(
                model=self.vision_model,
                contents=contents,
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    temperature=0.2,
                ),
            )
        except errors.APIError as e:
            raise _classify_api_error(e)

        return parse_analysis(response.text or "")
