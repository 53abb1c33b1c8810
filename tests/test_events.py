from photostudio.services.events import GenerationEventBus

from tests.conftest import OTHER_USER_ID, USER_ID, slot_prompts


async def test_events_filtered_by_generation_and_user():
    bus = GenerationEventBus()
    mine = bus.subscribe("g1", USER_ID)
    other_user = bus.subscribe("g1", OTHER_USER_ID)
    other_generation = bus.subscribe("g2", USER_ID)

    delivered = bus.visual_processing("g1", USER_ID, 0, "duo")

    assert delivered.type == "visual_processing"
    event = await mine.get(timeout=0.1)
    assert event.to_dict()["visualIndex"] == 0
    assert event.to_dict()["generationId"] == "g1"
    assert await other_user.get(timeout=0.01) is None
    assert await other_generation.get(timeout=0.01) is None


async def test_fan_out_and_no_replay():
    bus = GenerationEventBus()
    first = bus.subscribe("g1", USER_ID)
    second = bus.subscribe("g1", USER_ID)

    bus.visual_failed("g1", USER_ID, 2, "boom")
    late = bus.subscribe("g1", USER_ID)

    assert (await first.get(timeout=0.1)).data["error"] == "boom"
    assert (await second.get(timeout=0.1)).data["visualIndex"] == 2
    assert await late.get(timeout=0.01) is None


async def test_full_queue_drops_events():
    bus = GenerationEventBus(queue_size=1)
    subscription = bus.subscribe("g1", USER_ID)

    bus.visual_processing("g1", USER_ID, 0, "duo")
    bus.visual_processing("g1", USER_ID, 1, "solo")

    assert subscription.dropped == 1
    assert (await subscription.get(timeout=0.1)).data["visualIndex"] == 0


def test_unsubscribe_on_close():
    bus = GenerationEventBus()
    with bus.subscribe("g1", USER_ID):
        assert bus.subscriber_count == 1
    assert bus.subscriber_count == 0
    assert bus.visual_processing("g1", USER_ID, 0, "duo") is not None


async def test_generation_run_emits_events(service, session, generation, events):
    subscription = events.subscribe(generation.id, USER_ID)

    await service.generate(session, generation.id, USER_ID, prompts=slot_prompts(3))
    await service.queue.join()

    received = []
    while True:
        event = await subscription.get(timeout=0.05)
        if event is None:
            break
        received.append(event)

    types = [event.type for event in received]
    assert types.count("visual_processing") == 3
    assert types.count("visual_completed") == 3
    assert types[-1] == "generation_completed"
    assert received[-1].data == {"status": "completed", "completedCount": 3, "totalCount": 3}


async def test_visual_completed_payload_hides_storage_path():
    bus = GenerationEventBus()
    subscription = bus.subscribe("g1", USER_ID)

    bus.visual_completed("g1", USER_ID, 0, {
        "index": 0,
        "type": "duo",
        "status": "completed",
        "image_url": "/uploads/a.png",
        "image_path": "/srv/uploads/a.png",
        "generated_at": "2026-01-01T00:00:00",
        "prompt": "Duo shot",
    })

    event = await subscription.get(timeout=0.1)
    assert event.data["visual"] == {
        "type": "duo",
        "status": "completed",
        "image_url": "/uploads/a.png",
        "generated_at": "2026-01-01T00:00:00",
        "prompt": "Duo shot",
    }
