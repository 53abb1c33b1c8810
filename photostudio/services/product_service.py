"""
Product specification service: AI analysis and user corrections
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.database import crud
from photostudio.database.models import Product
from photostudio.exceptions import (
    ForbiddenError,
    ImageGenerationError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from photostudio.services.ai_backend import ImageBackend
from photostudio.services.prompt_merge import merge_product_json
from photostudio.utils.api_retry import APIRetryHandler, CircuitBreakerOpen

logger = logging.getLogger(__name__)

UNKNOWN_VALUES = {"unknown", "unsure", "not visible", "cannot determine", "n/a", "tbd", "none visible"}

TEXT_FIELDS = ("product_type", "product_name", "color_name", "color_hex", "material", "texture_description")
LOGO_FIELDS = ("type", "color", "position", "size")


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    return "" if text.lower() in UNKNOWN_VALUES else text


def normalize_product_data(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Coerce a vision model answer into the product specification shape.

    Missing keys get empty values, "Unknown"-style answers are blanked,
    logos that came back as plain strings become objects.
    """
    data = dict(raw or {})
    normalized = {field: _clean_text(data.get(field)) for field in TEXT_FIELDS}

    color_hex = normalized["color_hex"]
    if color_hex and not color_hex.startswith("#"):
        normalized["color_hex"] = f"#{color_hex}"

    details = data.get("details")
    if isinstance(details, dict):
        normalized["details"] = {key: _clean_text(value) for key, value in details.items()}
    elif details:
        normalized["details"] = {"notes": _clean_text(details)}
    else:
        normalized["details"] = {}

    for logo_key in ("logo_front", "logo_back"):
        logo = data.get(logo_key)
        if isinstance(logo, dict):
            normalized[logo_key] = {field: _clean_text(logo.get(field)) for field in LOGO_FIELDS}
        else:
            normalized[logo_key] = {"type": _clean_text(logo) or "None", "color": "", "position": "", "size": ""}

    extras = data.get("additional_details") or []
    if isinstance(extras, str):
        extras = [extras]
    normalized["additional_details"] = [text for text in (_clean_text(item) for item in extras) if text]

    try:
        score = float(data.get("confidence_score", 0))
    except (TypeError, ValueError):
        score = 0.0
    normalized["confidence_score"] = max(0.0, min(1.0, score))
    normalized["analyzed_at"] = datetime.now(timezone.utc).isoformat()

    return normalized


class ProductService:
    """Analyzes products and maintains analyzed/overrides/final JSON"""

    def __init__(self, backend: Optional[ImageBackend], retry_handler: APIRetryHandler):
        self.backend = backend
        self.retry_handler = retry_handler

    async def get_owned_product(self, session: AsyncSession, product_id: str, user_id: str) -> Product:
        product = await crud.get_product(session, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")
        if product.user_id != user_id:
            raise ForbiddenError("You do not have access to this product")
        return product

    async def analyze_product(self, session: AsyncSession, product_id: str, user_id: str) -> Dict[str, Any]:
        """Run vision analysis and store it as the new baseline"""
        product = await self.get_owned_product(session, product_id, user_id)
        image_urls = product.image_urls
        if not image_urls:
            raise ValidationError("Product has no images to analyze", code="NO_PRODUCT_IMAGES")
        if self.backend is None:
            raise ServiceUnavailableError("AI backend is not configured")

        logger.info(f"User {user_id} | Analyzing product {product_id} ({len(image_urls)} images)")
        try:
            raw = await self.retry_handler.execute_with_retry(
                self.backend.analyze_images, image_urls, f"Product name: {product.name}"
            )
        except (ImageGenerationError, CircuitBreakerOpen) as e:
            logger.error(f"User {user_id} | Product analysis failed: {e}")
            raise ServiceUnavailableError(f"Product analysis failed: {e}", code="ANALYSIS_FAILED")

        analyzed = normalize_product_data(raw)
        final = merge_product_json(analyzed, product.manual_product_overrides)
        await crud.save_product_json(session, product, final, analyzed_product_json=analyzed)
        return self.product_json(product)

    async def update_product_json(
        self,
        session: AsyncSession,
        product_id: str,
        user_id: str,
        overrides: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Store user corrections and recompute the final specification.

        The analyzed baseline is never modified.
        """
        if not isinstance(overrides, dict):
            raise ValidationError("Overrides must be a JSON object")

        product = await self.get_owned_product(session, product_id, user_id)
        if not product.analyzed_product_json:
            raise ValidationError("Product must be analyzed first", code="PRODUCT_NOT_ANALYZED")

        final = merge_product_json(product.analyzed_product_json, overrides)
        await crud.save_product_json(session, product, final, manual_product_overrides=overrides)
        logger.info(f"User {user_id} | Updated product JSON for {product_id} ({len(overrides)} override keys)")
        return self.product_json(product)

    async def get_product_json(self, session: AsyncSession, product_id: str, user_id: str) -> Dict[str, Any]:
        product = await self.get_owned_product(session, product_id, user_id)
        return self.product_json(product)

    @staticmethod
    def product_json(product: Product) -> Dict[str, Any]:
        return {
            "product_id": product.id,
            "analyzed": product.analyzed_product_json,
            "overrides": product.manual_product_overrides,
            "final": product.final_product_json,
        }
