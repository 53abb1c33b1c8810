import asyncio
import base64

import pytest

from photostudio.config import Settings
from photostudio.database import Database, crud
from photostudio.services.ai_backend import GeneratedImage, ImageBackend
from photostudio.services.events import GenerationEventBus
from photostudio.services.generation_service import GenerationService
from photostudio.services.generation_worker import GenerationWorker
from photostudio.services.job_queue import GenerationJobQueue
from photostudio.services.storage import LocalFileStorage
from photostudio.utils.api_retry import APIRetryHandler
from photostudio.utils.locks import GenerationLocks

# 1x1 transparent PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

ANALYZED_PRODUCT = {
    "product_type": "Hoodie",
    "product_name": "Cloud Hoodie",
    "color_name": "Red",
    "color_hex": "#C0392B",
    "material": "Cotton fleece",
    "texture_description": "Soft brushed fleece",
    "details": {"pockets": "Kangaroo pocket", "closure": "Drawstring hood"},
    "logo_front": {"type": "Embroidered", "color": "White", "position": "Chest", "size": "Small"},
    "logo_back": {"type": "None", "color": "", "position": "", "size": ""},
    "additional_details": ["Ribbed cuffs"],
    "confidence_score": 0.9,
}


class FakeImageBackend(ImageBackend):
    """Deterministic backend: fails prompts containing a configured marker"""

    name = "fake"

    def __init__(self, failures=None, analysis=None, delay: float = 0):
        super().__init__(model="fake-image-model", vision_model="fake-vision-model")
        self.failures = failures or {}
        self.analysis = analysis if analysis is not None else dict(ANALYZED_PRODUCT)
        self.delay = delay
        self.calls = []
        self.analysis_calls = []

    async def generate_image(self, prompt, aspect_ratio=None, resolution=None, model=None):
        self.calls.append({"prompt": prompt, "aspect_ratio": aspect_ratio, "resolution": resolution, "model": model})
        if self.delay:
            await asyncio.sleep(self.delay)
        for marker, error in self.failures.items():
            if marker in prompt:
                raise error
        return GeneratedImage(PNG_BYTES, "image/png")

    async def analyze_images(self, image_urls, context=None):
        self.analysis_calls.append(list(image_urls))
        if isinstance(self.analysis, Exception):
            raise self.analysis
        return dict(self.analysis)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        UPLOAD_LOCAL_PATH=str(tmp_path / "uploads"),
        IMAGE_RETRY_BASE_DELAY=0,
        IMAGE_RETRY_MAX_DELAY=0,
        IMAGE_TIMEOUT_SECONDS=5,
        VISION_TIMEOUT_SECONDS=5,
        SSE_HEARTBEAT_SECONDS=0.2,
        RUN_MIGRATIONS=False,
    )


@pytest.fixture
async def db(settings):
    database = Database(settings.database_url)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
async def session(db):
    async with db.get_session() as session:
        yield session


@pytest.fixture
def backend():
    return FakeImageBackend()


@pytest.fixture
def storage(settings):
    return LocalFileStorage(settings.UPLOAD_LOCAL_PATH)


@pytest.fixture
def retry_handler():
    return APIRetryHandler(max_retries=3, base_delay=0, max_delay=0, timeout=5, name="test")


@pytest.fixture
def events():
    return GenerationEventBus(queue_size=100)


@pytest.fixture
def locks():
    return GenerationLocks()


@pytest.fixture
async def queue(db, backend, storage, events, locks, retry_handler):
    worker = GenerationWorker(db, backend, storage, events, locks, retry_handler, concurrency=2,
                              persist_retry_delay=0)
    job_queue = GenerationJobQueue(handler=worker.process_job, workers=2)
    await job_queue.start()
    yield job_queue
    await job_queue.stop()


@pytest.fixture
def service(queue, events, locks, storage, settings, backend):
    return GenerationService(queue, events, locks, storage, settings, backend)


@pytest.fixture
async def collection(session):
    return await crud.create_collection(session, USER_ID, "Winter Drop / 2026")


@pytest.fixture
async def product(session, collection):
    return await crud.create_product(
        session,
        USER_ID,
        "Cloud Hoodie",
        collection_id=collection.id,
        front_image_url="https://cdn.example.com/hoodie-front.jpg",
        back_image_url="https://cdn.example.com/hoodie-back.jpg",
        analyzed_product_json=dict(ANALYZED_PRODUCT)
    )


@pytest.fixture
async def da_preset(session):
    return await crud.create_da_preset(
        session,
        code="nordic_loft",
        name="Nordic Loft",
        background_type="Whitewashed brick wall",
        background_hex="#F2F0EB",
        floor_type="Light oak planks",
        floor_hex="#D8C3A5",
        props_left=["Wicker basket", "Pampas grass"],
        props_right=["Wooden stool"],
        styling_pants="Beige chinos",
        styling_footwear="White sneakers",
        lighting_type="Soft window light",
        lighting_temperature="5000K",
        mood="Calm and cozy",
        quality="Ultra sharp, high detail"
    )


@pytest.fixture
async def generation(service, session, product, collection):
    return await service.create(session, USER_ID, {
        "product_id": product.id,
        "collection_id": collection.id,
        "generation_type": "product_visuals",
    })


def slot_prompts(count: int = 6, failing=()):
    """Prompt objects for count slots; indexes in failing carry a FAIL marker"""
    return [
        {"type": f"slot_{index}", "prompt": f"Prompt for slot {index}" + (" FAIL" if index in failing else "")}
        for index in range(count)
    ]
