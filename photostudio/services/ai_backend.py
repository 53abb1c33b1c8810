"""
AI capability interface shared by the image backends.

One backend is constructed at startup (see create_image_backend) and
injected into the services that need it:
- generate_image(prompt, aspect_ratio, resolution, model) -> GeneratedImage
- analyze_images(image_urls, context) -> dict
"""
import json
import logging
import re
from io import BytesIO
from typing import Dict, List, Optional

import aiofiles
import aiohttp
from PIL import Image

from photostudio.exceptions import ContentPolicyError, MissingCredentialsError, TransientGenerationError

logger = logging.getLogger(__name__)

REFUSAL_MARKERS = (
    'cannot generate',
    'unable to generate',
    'i cannot',
    'i am unable',
    'violates',
    'policy',
)

PII_PATTERNS = [
    # Person descriptors
    r'\b(young|old|middle-aged|elderly|teenage)\s+(man|woman|person|model|guy|girl|boy|lady|gentleman)\b',
    r'\b(confident|smiling|happy|serious|professional|attractive)\s+(young|old|middle-aged)?\s*(man|woman|person|model)\b',
    r'\b(man|woman|person|guy|girl|boy|lady)\s+(with|wearing|in)\b',
    # Family relationships
    r'\bfather\s+and\s+son\b',
    r'\bmother\s+and\s+daughter\b',
    r'\bparent\s+and\s+child\b',
    r'\bfamily\s+members?\b',
    # Demographics
    r'\b(asian|african|european|american|caucasian|hispanic)\s+(man|woman|person|model)\b',
    # Age
    r'\b(\d+)\s*-?\s*year\s*-?\s*old\b',
]

NEUTRAL_TERMS = [
    (r'\bperson\b', 'mannequin'),
    (r'\bpeople\b', 'mannequins'),
    (r'\bmodel wearing\b', 'product shown on'),
    (r'\bworn by\b', 'displayed on'),
    (r'\bTwo models\b', 'Two mannequins'),
    (r'\bmodels\b', 'mannequins'),
]

PRODUCT_ANALYSIS_PROMPT = """You are an expert fashion merchandiser filling out a digital product passport.
Analyze ALL provided images (front, back, references) and make definitive predictions.
Never answer "Unknown", "N/A" or "Not visible": infer from visual evidence instead.

Return ONLY valid JSON with this exact structure:
{
  "product_type": "Specific product type (e.g. Quilted Puffer Jacket)",
  "product_name": "Full descriptive name",
  "color_name": "Definitive color name",
  "color_hex": "Hex code (e.g. #000000)",
  "material": "Inferred material",
  "details": {"piping": "", "zip": "", "collar": "", "pockets": "", "fit": "", "sleeves": ""},
  "logo_front": {"type": "", "color": "", "position": "", "size": ""},
  "logo_back": {"type": "", "color": "", "position": "", "size": ""},
  "texture_description": "Tactile description",
  "additional_details": ["Notable features"],
  "confidence_score": 0.95
}"""


class GeneratedImage:
    """Image returned by a backend"""

    def __init__(self, image_bytes: bytes, mime_type: str = "image/png", text: Optional[str] = None):
        self.image_bytes = image_bytes
        self.mime_type = mime_type
        self.text = text

    def __repr__(self):
        return f"GeneratedImage(mime_type={self.mime_type!r}, size={len(self.image_bytes)})"


class ImageBackend:
    """Base class for AI backends"""

    name = "base"

    def __init__(self, model: str, vision_model: Optional[str] = None):
        self.model = model
        self.vision_model = vision_model or model

    async def generate_image(
        self,
        prompt: str,
        aspect_ratio: Optional[str] = None,
        resolution: Optional[str] = None,
        model: Optional[str] = None
    ) -> GeneratedImage:
        raise NotImplementedError

    async def analyze_images(self, image_urls: List[str], context: Optional[str] = None) -> Dict:
        raise NotImplementedError

    async def close(self):
        pass


# ==================== PROMPT HELPERS ====================

def sanitize_prompt(prompt: str) -> str:
    """
    Replace descriptions of specific people with neutral wording.

    Image models reject prompts that read like portraits of real people, so
    ages, demographics and family relations become "professional model".
    """
    sanitized = prompt
    for pattern in PII_PATTERNS:
        sanitized = re.sub(pattern, 'professional model', sanitized, flags=re.IGNORECASE)
    for pattern, replacement in NEUTRAL_TERMS:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    lowered = sanitized.lower()
    if 'product' not in lowered and 'clothing' not in lowered and 'garment' not in lowered:
        sanitized = f"Product photography: {sanitized}"
    return sanitized


def enhance_prompt(prompt: str, aspect_ratio: Optional[str], resolution: Optional[str]) -> str:
    return (
        f"Professional e-commerce product photography: {sanitize_prompt(prompt)}. "
        f"High quality studio lighting, sharp details, clean background. "
        f"Aspect ratio: {aspect_ratio or '1:1'}. Resolution: {resolution or '1K'}."
    )


def detect_refusal(text: Optional[str]):
    """Raise ContentPolicyError if model text reads like a refusal"""
    if not text:
        return
    lowered = text.lower()
    if any(marker in lowered for marker in REFUSAL_MARKERS):
        raise ContentPolicyError(f"Model refused: {text[:300]}")


def extract_json_from_response(content: str) -> str:
    """
    Extract JSON from model response that might be wrapped in markdown.

    Handles ```json ... ``` blocks, bare ``` blocks and plain objects.
    """
    json_match = re.search(r'```json\s*\n?(.+?)\n?```', content, re.DOTALL)
    if json_match:
        return json_match.group(1).strip()

    code_match = re.search(r'```\s*\n?(.+?)\n?```', content, re.DOTALL)
    if code_match:
        return code_match.group(1).strip()

    json_obj_match = re.search(r'\{.+\}', content, re.DOTALL)
    if json_obj_match:
        return json_obj_match.group(0).strip()

    return content.strip()


def parse_analysis(content: str) -> Dict:
    try:
        data = json.loads(extract_json_from_response(content))
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse analysis JSON: {e}. Content: {content[:200]}")
        raise TransientGenerationError("Vision model returned invalid JSON")
    if not isinstance(data, dict):
        raise TransientGenerationError("Vision model returned a non-object JSON value")
    return data


def detect_mime_type(image_bytes: bytes, default: str = "image/jpeg") -> str:
    """Determine mime type from image content"""
    try:
        img = Image.open(BytesIO(image_bytes))
        img_format = img.format.lower() if img.format else None
    except Exception:
        return default
    if not img_format:
        return default
    if img_format == "jpg":
        img_format = "jpeg"
    return f"image/{img_format}"


async def load_image_bytes(url: str, timeout: float = 30.0) -> bytes:
    """
    Load image bytes from an http(s) URL or a local upload path.

    Args:
        url: Absolute URL or path like "/uploads/abc.jpg"
        timeout: Download timeout in seconds
    """
    if url.startswith("http://") or url.startswith("https://"):
        async with aiohttp.ClientSession() as session:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                if response.status != 200:
                    raise TransientGenerationError(f"Failed to download image {url}: HTTP {response.status}")
                return await response.read()

    async with aiofiles.open(url.lstrip("/"), "rb") as f:
        return await f.read()


# ==================== FACTORY ====================

def create_image_backend(settings) -> ImageBackend:
    """
    Construct the configured backend once at startup.

    Raises:
        MissingCredentialsError: If the selected backend has no API key
        ValueError: If IMAGE_BACKEND names an unknown backend
    """
    backend = (settings.IMAGE_BACKEND or "").lower()

    if backend == "gemini":
        if not settings.GEMINI_API_KEY:
            raise MissingCredentialsError("GEMINI_API_KEY is not configured")
        from photostudio.services.gemini import GeminiImageBackend
        return GeminiImageBackend(
            api_key=settings.GEMINI_API_KEY,
            model=settings.GEMINI_MODEL,
            vision_model=settings.GEMINI_VISION_MODEL,
            timeout=settings.IMAGE_TIMEOUT_SECONDS
        )

    if backend == "openrouter":
        if not settings.OPENROUTER_API_KEY:
            raise MissingCredentialsError("OPENROUTER_API_KEY is not configured")
        from photostudio.services.openrouter import OpenRouterImageBackend
        return OpenRouterImageBackend(
            api_key=settings.OPENROUTER_API_KEY,
            model=settings.OPENROUTER_IMAGE_MODEL,
            vision_model=settings.OPENROUTER_VISION_MODEL,
            base_url=settings.OPENROUTER_BASE_URL,
            timeout=settings.IMAGE_TIMEOUT_SECONDS,
            vision_timeout=settings.VISION_TIMEOUT_SECONDS
        )

    raise ValueError(f"Unknown IMAGE_BACKEND: {settings.IMAGE_BACKEND}")
