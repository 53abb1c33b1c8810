import asyncio
import io
import json
import zipfile

import pytest

from photostudio.api import create_app
from photostudio.database import crud
from photostudio.exceptions import ContentPolicyError

from tests.conftest import OTHER_USER_ID, USER_ID, slot_prompts

HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
async def client(aiohttp_client, settings, db, backend, storage, retry_handler):
    app = create_app(settings, db, backend, storage, retry_handler=retry_handler, analysis_retry_handler=retry_handler)
    return await aiohttp_client(app)


@pytest.fixture
async def seeded(db):
    async with db.get_session() as session:
        collection = await crud.create_collection(session, USER_ID, "Spring")
        product = await crud.create_product(
            session, USER_ID, "Linen Shirt",
            collection_id=collection.id,
            front_image_url="https://cdn.example.com/front.jpg",
            analyzed_product_json={"product_type": "Shirt", "color_name": "Red", "material": "Linen"}
        )
        preset = await crud.create_da_preset(
            session,
            code="studio",
            name="Studio",
            background_type="Seamless paper",
            background_hex="#FFFFFF",
            floor_type="Seamless paper",
            floor_hex="#FFFFFF",
            lighting_type="Softbox",
            lighting_temperature="5600K"
        )
        return {"collection_id": collection.id, "product_id": product.id, "preset_id": preset.id}


async def create_generation(client, seeded):
    resp = await client.post("/generations", headers=HEADERS, json={
        "product_id": seeded["product_id"],
        "collection_id": seeded["collection_id"],
        "generation_type": "product_visuals",
    })
    assert resp.status == 201
    return await resp.json()


async def wait_for_status(client, generation_id, statuses=("completed", "failed")):
    for _ in range(200):
        resp = await client.get(f"/generations/{generation_id}/progress", headers=HEADERS)
        body = await resp.json()
        if body["status"] in statuses:
            return body
        await asyncio.sleep(0.02)
    raise AssertionError(f"Generation {generation_id} did not finish")


async def test_health_is_public(client):
    resp = await client.get("/health")
    assert resp.status == 200
    assert await resp.text() == "OK"


async def test_missing_user_header(client):
    resp = await client.get("/generations")
    assert resp.status == 401
    assert (await resp.json())["error"]["code"] == "UNAUTHORIZED"


async def test_create_and_list(client, seeded):
    created = await create_generation(client, seeded)
    assert created["status"] == "pending"

    resp = await client.get("/generations", headers=HEADERS, params={"status": "pending", "limit": "5"})
    body = await resp.json()
    assert body["total"] == 1
    assert body["limit"] == 5
    assert body["items"][0]["id"] == created["id"]

    resp = await client.get("/generations", headers={"X-User-Id": OTHER_USER_ID})
    assert (await resp.json())["total"] == 0


async def test_create_collection_mismatch(client, seeded, db):
    resp = await client.post("/generations", headers=HEADERS, json={
        "product_id": seeded["product_id"],
        "collection_id": "another-collection",
        "generation_type": "product_visuals",
    })

    assert resp.status == 400
    assert (await resp.json())["error"]["code"] == "PRODUCT_COLLECTION_MISMATCH"
    async with db.get_session() as session:
        assert (await crud.list_generations(session, USER_ID))[1] == 0


async def test_invalid_json_body(client):
    resp = await client.post("/generations", headers=HEADERS, data="{not json")
    assert resp.status == 400


async def test_full_flow(client, seeded, backend):
    backend.failures["FAIL"] = ContentPolicyError("refused")
    generation = await create_generation(client, seeded)
    generation_id = generation["id"]

    resp = await client.post(f"/generations/{generation_id}/merge", headers=HEADERS,
                             json={"da_preset_id": seeded["preset_id"]})
    assert resp.status == 200
    assert len((await resp.json())["visuals"]) == 6

    resp = await client.get(f"/generations/{generation_id}/prompts", headers=HEADERS)
    assert len((await resp.json())["prompts"]) == 6

    prompts = slot_prompts(6, failing={3})
    resp = await client.post(f"/generations/{generation_id}/prompts", headers=HEADERS, json={"prompts": prompts})
    assert resp.status == 200

    resp = await client.post(f"/generations/{generation_id}/generate", headers=HEADERS, json={})
    assert resp.status == 202

    progress = await wait_for_status(client, generation_id)
    assert progress["status"] == "completed"
    assert progress["total"] == 6
    assert progress["completed"] == 5
    assert progress["progress"] == 83
    assert progress["visuals"][3]["status"] == "failed"

    resp = await client.get(f"/generations/{generation_id}", headers=HEADERS)
    visuals = (await resp.json())["visuals"]
    assert visuals[0]["image_url"]
    assert all("image_path" not in visual for visual in visuals)

    resp = await client.get(f"/generations/{generation_id}/download", headers=HEADERS)
    assert resp.status == 200
    assert resp.headers["Content-Disposition"] == f'attachment; filename="generation-{generation_id}.zip"'
    assert resp.headers["Transfer-Encoding"] == "chunked"
    with zipfile.ZipFile(io.BytesIO(await resp.read())) as zf:
        assert len(zf.namelist()) == 5
        assert all(name.startswith("Spring/Linen_Shirt/") for name in zf.namelist())

    backend.failures.clear()
    resp = await client.post(f"/generations/{generation_id}/visual/3/retry", headers=HEADERS, json={})
    assert resp.status == 202
    progress = await wait_for_status(client, generation_id)
    assert progress["completed"] == 6

    resp = await client.post(f"/generations/{generation_id}/reset", headers=HEADERS)
    assert resp.status == 200
    assert (await resp.json())["status"] == "pending"


async def test_generate_twice_conflicts(client, seeded, backend):
    backend.delay = 0.05
    generation = await create_generation(client, seeded)
    url = f"/generations/{generation['id']}/generate"

    first = await client.post(url, headers=HEADERS, json={"prompts": slot_prompts(2)})
    second = await client.post(url, headers=HEADERS, json={"prompts": slot_prompts(2)})

    assert first.status == 202
    assert second.status == 409
    await wait_for_status(client, generation["id"])
    assert len(backend.calls) == 2


async def test_retry_invalid_index(client, seeded):
    generation = await create_generation(client, seeded)
    await client.post(f"/generations/{generation['id']}/generate", headers=HEADERS, json={"prompts": slot_prompts(2)})
    await wait_for_status(client, generation["id"])

    resp = await client.post(f"/generations/{generation['id']}/visual/9/retry", headers=HEADERS, json={})
    assert resp.status == 400
    assert (await resp.json())["error"]["message"] == "Invalid visual index"


async def test_download_without_completed_visuals(client, seeded):
    generation = await create_generation(client, seeded)
    resp = await client.get(f"/generations/{generation['id']}/download", headers=HEADERS)
    assert resp.status == 400


async def test_foreign_generation_is_not_found(client, seeded):
    generation = await create_generation(client, seeded)
    resp = await client.get(f"/generations/{generation['id']}/progress", headers={"X-User-Id": OTHER_USER_ID})
    assert resp.status == 404


async def test_product_json_routes(client, seeded):
    url = f"/products/{seeded['product_id']}/product-json"

    resp = await client.put(url, headers=HEADERS, json={"overrides": {"color_name": "Navy"}})
    assert resp.status == 200
    body = await resp.json()
    assert body["final"] == {"product_type": "Shirt", "color_name": "Navy", "material": "Linen"}

    resp = await client.get(url, headers=HEADERS)
    assert (await resp.json())["analyzed"]["color_name"] == "Red"

    resp = await client.post(f"/products/{seeded['product_id']}/analyze", headers=HEADERS)
    assert resp.status == 200
    assert (await resp.json())["final"]["color_name"] == "Navy"


async def test_debug_config(client):
    resp = await client.get("/debug/config", headers=HEADERS)
    body = await resp.json()
    assert body["image_configured"] is True
    assert body["queue_running"] is True
    assert body["locks"]["active_locks"] == 0
    assert body["sessions"]["total_requests"] >= 1
    assert body["circuit"]["state"] == "closed"


async def read_events(resp, until="generation_completed", timeout=5.0):
    events = []
    event_type = None

    async def consume():
        nonlocal event_type
        while True:
            line = (await resp.content.readline()).decode("utf-8").rstrip("\n")
            if line.startswith("event: "):
                event_type = line[len("event: "):]
            elif line.startswith("data: "):
                events.append((event_type, json.loads(line[len("data: "):])))
                if event_type == until:
                    return

    await asyncio.wait_for(consume(), timeout=timeout)
    return events


async def test_stream_delivers_progress_events(client, seeded):
    generation = await create_generation(client, seeded)
    generation_id = generation["id"]

    resp = await client.get(f"/generations/{generation_id}/stream", headers=HEADERS)
    assert resp.status == 200
    assert resp.headers["Content-Type"].startswith("text/event-stream")

    await client.post(f"/generations/{generation_id}/generate", headers=HEADERS, json={"prompts": slot_prompts(2)})
    events = await read_events(resp)

    assert events[0] == ("status", {"generationId": generation_id, "status": "pending", "progress": 0})
    types = [event_type for event_type, _ in events]
    assert types.count("visual_completed") == 2
    assert types[-1] == "generation_completed"
    assert events[-1][1]["completedCount"] == 2
    resp.close()


async def test_stream_rejects_foreign_generation(client, seeded):
    generation = await create_generation(client, seeded)
    resp = await client.get(f"/generations/{generation['id']}/stream", headers={"X-User-Id": OTHER_USER_ID})
    assert resp.status == 404


async def test_startup_closes_interrupted_generations(aiohttp_client, settings, db, backend, storage, retry_handler,
                                                      seeded):
    async with db.get_session() as session:
        generation = await crud.create_generation(session, seeded["product_id"], USER_ID)
        generation.status = "processing"
        await session.commit()
        generation_id = generation.id

    app = create_app(settings, db, backend, storage, retry_handler=retry_handler, analysis_retry_handler=retry_handler)
    client = await aiohttp_client(app)

    resp = await client.get(f"/generations/{generation_id}/progress", headers=HEADERS)
    assert (await resp.json())["status"] == "failed"
    resp = await client.post(f"/generations/{generation_id}/generate", headers=HEADERS,
                             json={"prompts": slot_prompts(2)})
    assert resp.status == 202
