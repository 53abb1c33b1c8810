from typing import Optional, List, Dict, Any, Tuple
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from .models import Collection, Product, DAPreset, Generation, GenerationStatus, GenerationType, utcnow

logger = logging.getLogger(__name__)


# ==================== COLLECTION OPERATIONS ====================

async def create_collection(
    session: AsyncSession,
    user_id: str,
    name: str,
    prompt_templates: Optional[Dict[str, str]] = None,
    fixed_elements: Optional[Dict[str, Any]] = None
) -> Collection:
    """Create collection"""
    collection = Collection(
        user_id=user_id,
        name=name,
        prompt_templates=prompt_templates,
        fixed_elements=fixed_elements
    )
    session.add(collection)
    await session.commit()
    await session.refresh(collection)
    return collection


async def get_collection(session: AsyncSession, collection_id: str) -> Optional[Collection]:
    """Get collection by ID"""
    result = await session.execute(
        select(Collection).where(Collection.id == collection_id)
    )
    return result.scalar_one_or_none()


# ==================== PRODUCT OPERATIONS ====================

async def create_product(
    session: AsyncSession,
    user_id: str,
    name: str,
    collection_id: Optional[str] = None,
    front_image_url: Optional[str] = None,
    back_image_url: Optional[str] = None,
    reference_images: Optional[List[str]] = None,
    analyzed_product_json: Optional[Dict[str, Any]] = None
) -> Product:
    """Create product (optionally with an existing analysis)"""
    product = Product(
        user_id=user_id,
        name=name,
        collection_id=collection_id,
        front_image_url=front_image_url,
        back_image_url=back_image_url,
        reference_images=reference_images,
        analyzed_product_json=analyzed_product_json,
        final_product_json=analyzed_product_json,
        analyzed_at=utcnow() if analyzed_product_json else None
    )
    session.add(product)
    await session.commit()
    await session.refresh(product)
    return product


async def get_product(session: AsyncSession, product_id: str) -> Optional[Product]:
    """Get product by ID"""
    result = await session.execute(
        select(Product).where(Product.id == product_id)
    )
    return result.scalar_one_or_none()


async def save_product_json(
    session: AsyncSession,
    product: Product,
    final_product_json: Dict[str, Any],
    analyzed_product_json: Optional[Dict[str, Any]] = None,
    manual_product_overrides: Optional[Dict[str, Any]] = None
) -> Product:
    """Persist product specification columns"""
    if analyzed_product_json is not None:
        product.analyzed_product_json = analyzed_product_json
        product.analyzed_at = utcnow()
    if manual_product_overrides is not None:
        product.manual_product_overrides = manual_product_overrides
    product.final_product_json = final_product_json
    await session.commit()
    await session.refresh(product)
    return product


# ==================== DA PRESET OPERATIONS ====================

async def create_da_preset(session: AsyncSession, **fields) -> DAPreset:
    """Create DA preset"""
    preset = DAPreset(**fields)
    session.add(preset)
    await session.commit()
    await session.refresh(preset)
    return preset


async def get_da_preset(session: AsyncSession, preset_id: str) -> Optional[DAPreset]:
    """Get DA preset by ID or code"""
    result = await session.execute(
        select(DAPreset).where((DAPreset.id == preset_id) | (DAPreset.code == preset_id))
    )
    return result.scalars().first()


# ==================== GENERATION OPERATIONS ====================

async def create_generation(
    session: AsyncSession,
    product_id: str,
    user_id: str,
    collection_id: Optional[str] = None,
    generation_type: str = GenerationType.PRODUCT_VISUALS.value,
    aspect_ratio: str = "4:5",
    resolution: str = "4K"
) -> Generation:
    """Create pending generation with no visuals"""
    generation = Generation(
        product_id=product_id,
        collection_id=collection_id,
        user_id=user_id,
        generation_type=generation_type,
        aspect_ratio=aspect_ratio,
        resolution=resolution,
        visuals=[],
        status=GenerationStatus.PENDING.value,
        current_step="pending",
        progress_percent=0,
        completed_visuals_count=0
    )
    session.add(generation)
    await session.commit()
    await session.refresh(generation)
    return generation


async def get_generation(
    session: AsyncSession,
    generation_id: str,
    user_id: Optional[str] = None
) -> Optional[Generation]:
    """
    Get generation by ID, optionally scoped to its owner.

    Always reloads the row so that writes made by the worker in other
    sessions are visible.
    """
    query = select(Generation).where(Generation.id == generation_id)
    if user_id is not None:
        query = query.where(Generation.user_id == user_id)
    result = await session.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def list_generations(
    session: AsyncSession,
    user_id: str,
    product_id: Optional[str] = None,
    collection_id: Optional[str] = None,
    generation_type: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20
) -> Tuple[List[Generation], int]:
    """List user's generations, newest first"""
    conditions = [Generation.user_id == user_id]
    if product_id:
        conditions.append(Generation.product_id == product_id)
    if collection_id:
        conditions.append(Generation.collection_id == collection_id)
    if generation_type:
        conditions.append(Generation.generation_type == generation_type)
    if status:
        conditions.append(Generation.status == status)

    total = await session.scalar(
        select(func.count(Generation.id)).where(*conditions)
    )
    result = await session.execute(
        select(Generation)
        .where(*conditions)
        .order_by(Generation.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0


async def get_generation_ids_by_status(session: AsyncSession, status: str) -> List[str]:
    """IDs of all generations in a status, any owner"""
    result = await session.execute(
        select(Generation.id).where(Generation.status == status).order_by(Generation.created_at)
    )
    return list(result.scalars().all())
