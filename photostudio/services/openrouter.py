"""
OpenRouter Image Generation Service (chat/completions with image output)
"""
import aiohttp
import base64
import logging
from typing import Dict, List, Optional

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
    parse_analysis,
)

logger = logging.getLogger(__name__)


class OpenRouterImageBackend(ImageBackend):
    """Image generation and product analysis via OpenRouter"""

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        model: str,
        vision_model: Optional[str] = None,
        base_url: str = "https://openrouter.ai/api/v1/chat/completions",
        timeout: float = 180.0,
        vision_timeout: float = 60.0
    ):
        super().__init__(model, vision_model)
        if not api_key:
            raise MissingCredentialsError("OPENROUTER_API_KEY is not configured")
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.vision_timeout = vision_timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "PhotoStudio"
        }

    async def _post(self, payload: Dict, timeout: float) -> Dict:
        """POST to chat/completions and classify HTTP failures"""
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.base_url,
                json=payload,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status == 200:
                    return await response.json()

                error_text = await response.text()
                logger.error(f"OpenRouter API Error: {response.status} - {error_text[:500]}")

                if response.status == 429 or response.status >= 500:
                    raise TransientGenerationError(f"API Error: {response.status}")
                if response.status in (401, 403):
                    raise MissingCredentialsError(f"OpenRouter rejected credentials ({response.status})")
                if "policy" in error_text.lower() or "safety" in error_text.lower():
                    raise ContentPolicyError(f"Prompt rejected: {error_text[:300]}")
                raise ImageGenerationError(f"API Error: {response.status}")

    async def generate_image(
        self,
        prompt: str,
        aspect_ratio: Optional[str] = None,
        resolution: Optional[str] = None,
        model: Optional[str] = None
    ) -> GeneratedImage:
        """
        Generate one image.

        Returns:
            GeneratedImage decoded from the first data URL in message.images
        """
        model_name = model or self.model
        image_config = {"aspect_ratio": aspect_ratio if aspect_ratio and ":" in aspect_ratio else "1:1"}
        if resolution:
            image_config["image_size"] = resolution.upper()

        payload = {
            "model": model_name,
            "modalities": ["text", "image"],  # Required for image generation
            "image_config": image_config,
            "messages": [
                {
                    "role": "user",
                    "content": enhance_prompt(prompt, aspect_ratio, resolution)
                }
            ]
        }

        logger.info(f"Sending generation request to {model_name} (aspect_ratio={image_config['aspect_ratio']})...")
        result = await self._post(payload, self.timeout)

        # Response format:
        # {"choices": [{"message": {"content": "...",
        #   "images": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,..."}}]}}]}
        choices = result.get('choices', [])
        if not choices:
            raise TransientGenerationError("No output from API")

        message = choices[0].get('message', {})
        images = message.get('images') or []

        if images:
            data_url = images[0].get('image_url', {}).get('url', '')
            if not data_url.startswith('data:image/'):
                raise ImageGenerationError("Invalid image data URL format")

            header, _, base64_data = data_url.partition(',')
            try:
                image_bytes = base64.b64decode(base64_data)
            except (ValueError, TypeError) as e:
                raise ImageGenerationError(f"Failed to decode image: {e}")

            mime_type = header[len('data:'):].split(';', 1)[0] or detect_mime_type(image_bytes, "image/png")
            return GeneratedImage(image_bytes, mime_type, message.get('content') or None)

        content = message.get('content') or ''
        detect_refusal(content)
        logger.error(f"No images in response. Content: {content[:200]}")
        raise TransientGenerationError("Model returned no image")

    async def analyze_images(self, image_urls: List[str], context: Optional[str] = None) -> Dict:
        """Analyze product images into a structured specification"""
        if not image_urls:
            raise ImageGenerationError("No images to analyze")

        text = PRODUCT_ANALYSIS_PROMPT if not context else f"{PRODUCT_ANALYSIS_PROMPT}\n\nContext: {context}"
        content = [{"type": "text", "text": text}]
        content.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)

        payload = {
            "model": self.vision_model,
            "messages": [{"role": "user", "content": content}],
            "temperature": 0.2,  # Lower temperature for more consistent results
            "response_format": {"type": "json_object"}
        }

        logger.info(f"Sending product analysis request to {self.vision_model} ({len(image_urls)} images)...")
        result = await self._post(payload, self.vision_timeout)

        choices = result.get('choices', [])
        if not choices:
            raise TransientGenerationError("No output from API")
        return parse_analysis(choices[0].get('message', {}).get('content') or '')
