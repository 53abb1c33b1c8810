import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, ForeignKey, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

from photostudio.utils.json_merge import merge

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def isoformat(value):
    return value.isoformat() if value else None


# Server-side storage details never leave the API
PRIVATE_VISUAL_FIELDS = ("image_path",)


def public_visual(visual: dict) -> dict:
    return {key: value for key, value in visual.items() if key not in PRIVATE_VISUAL_FIELDS}


class GenerationStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VisualStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationType(str, enum.Enum):
    PRODUCT_VISUALS = "product_visuals"
    AD_RECREATION = "ad_recreation"


class Collection(Base):
    __tablename__ = "collections"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    fixed_elements = Column(JSONType, nullable=True)
    prompt_templates = Column(JSONType, nullable=True)  # slot -> template override
    created_at = Column(DateTime, default=utcnow, nullable=False)

    products = relationship("Product", back_populates="collection")


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    collection_id = Column(String(36), ForeignKey("collections.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    front_image_url = Column(Text, nullable=True)
    back_image_url = Column(Text, nullable=True)
    reference_images = Column(JSONType, nullable=True)

    # Product specification: AI baseline, user corrections and the merged result
    analyzed_product_json = Column(JSONType, nullable=True)
    manual_product_overrides = Column(JSONType, nullable=True)
    final_product_json = Column(JSONType, nullable=True)
    analyzed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    collection = relationship("Collection", back_populates="products")

    @property
    def image_urls(self) -> list:
        urls = [self.front_image_url, self.back_image_url]
        urls.extend(self.reference_images or [])
        return [url for url in urls if url]


class DAPreset(Base):
    """Art direction preset: background, floor, props, styling, lighting"""
    __tablename__ = "da_presets"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(64), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)

    background_type = Column(String(255), nullable=False)
    background_hex = Column(String(16), nullable=False)
    floor_type = Column(String(255), nullable=False)
    floor_hex = Column(String(16), nullable=False)
    props_left = Column(JSONType, nullable=True)
    props_right = Column(JSONType, nullable=True)
    styling_pants = Column(String(255), nullable=True)
    styling_footwear = Column(String(255), nullable=True)
    lighting_type = Column(String(255), nullable=False)
    lighting_temperature = Column(String(64), nullable=False)
    mood = Column(Text, nullable=True)
    quality = Column(Text, nullable=True)
    additional_config = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_preset_config(self) -> dict:
        """DA specification consumed by the prompt merge engine"""
        config = {
            "da_name": self.name,
            "background": {"type": self.background_type, "hex": self.background_hex},
            "floor": {"type": self.floor_type, "hex": self.floor_hex},
            "props": {
                "left_side": list(self.props_left or []),
                "right_side": list(self.props_right or []),
            },
            "styling": {
                "pants": self.styling_pants or "",
                "footwear": self.styling_footwear or "",
            },
            "lighting": {"type": self.lighting_type, "temperature": self.lighting_temperature},
            "mood": self.mood or "",
            "quality": self.quality or "",
        }
        if self.additional_config:
            config = merge(config, self.additional_config)
        return config


class Generation(Base):
    __tablename__ = "generations"

    id = Column(String(36), primary_key=True, default=new_id)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    collection_id = Column(String(36), ForeignKey("collections.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    generation_type = Column(String(32), nullable=False, default=GenerationType.PRODUCT_VISUALS.value)

    merged_prompts = Column(JSONType, nullable=True)  # slot -> merged prompt object
    aspect_ratio = Column(String(16), nullable=False, default="4:5")
    resolution = Column(String(8), nullable=False, default="4K")
    visuals = Column(JSONType, nullable=False, default=list)

    status = Column(String(20), nullable=False, default=GenerationStatus.PENDING.value, index=True)
    current_step = Column(String(255), nullable=True)
    progress_percent = Column(Integer, nullable=False, default=0)
    completed_visuals_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Optimistic locking: concurrent stale writes raise StaleDataError
    version = Column(Integer, nullable=False, default=1)

    product = relationship("Product")
    collection = relationship("Collection")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "collection_id": self.collection_id,
            "user_id": self.user_id,
            "generation_type": self.generation_type,
            "merged_prompts": self.merged_prompts,
            "aspect_ratio": self.aspect_ratio,
            "resolution": self.resolution,
            "visuals": [public_visual(visual) for visual in self.visuals or []],
            "status": self.status,
            "current_step": self.current_step,
            "progress_percent": self.progress_percent,
            "completed_visuals_count": self.completed_visuals_count,
            "error_message": self.error_message,
            "created_at": isoformat(self.created_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
        }
