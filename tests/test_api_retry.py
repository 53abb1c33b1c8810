import asyncio

import pytest

from photostudio.exceptions import ContentPolicyError, GenerationTimeoutError, TransientGenerationError
from photostudio.utils.api_retry import APIRetryHandler, CircuitBreakerOpen


class FlakyCall:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def handler(**kwargs):
    options = dict(max_retries=3, base_delay=0, max_delay=0, timeout=1, name="test")
    options.update(kwargs)
    return APIRetryHandler(**options)


async def test_transient_errors_are_retried():
    call = FlakyCall([TransientGenerationError("503"), TransientGenerationError("429")])
    assert await handler().execute_with_retry(call) == "ok"
    assert call.calls == 3


async def test_exhausted_retries_raise_last_error():
    call = FlakyCall([TransientGenerationError(str(n)) for n in range(3)])
    with pytest.raises(TransientGenerationError, match="2"):
        await handler().execute_with_retry(call)
    assert call.calls == 3


async def test_policy_refusal_is_not_retried():
    call = FlakyCall([ContentPolicyError("refused")])
    with pytest.raises(ContentPolicyError):
        await handler().execute_with_retry(call)
    assert call.calls == 1


async def test_timeout_is_not_retried():
    calls = []

    async def slow():
        calls.append(1)
        await asyncio.sleep(1)

    with pytest.raises(GenerationTimeoutError):
        await handler(timeout=0.01).execute_with_retry(slow)
    assert len(calls) == 1


def test_backoff_is_exponential_and_capped():
    retry = handler(base_delay=2, max_delay=5)
    assert [retry._delay_for(attempt) for attempt in range(4)] == [2, 4, 5, 5]


async def test_circuit_opens_after_repeated_exhaustion():
    retry = handler(max_retries=1, circuit_failure_threshold=2, circuit_timeout=60)
    for _ in range(2):
        with pytest.raises(TransientGenerationError):
            await retry.execute_with_retry(FlakyCall([TransientGenerationError("down")]))

    assert retry.is_open
    with pytest.raises(CircuitBreakerOpen):
        await retry.execute_with_retry(FlakyCall([]))


async def test_half_open_trial_closes_circuit():
    retry = handler(max_retries=1, circuit_failure_threshold=1, circuit_timeout=0)
    with pytest.raises(TransientGenerationError):
        await retry.execute_with_retry(FlakyCall([TransientGenerationError("down")]))
    assert retry.state == "open"

    assert await retry.execute_with_retry(FlakyCall([])) == "ok"
    assert retry.state == "closed"
    assert retry.get_stats()["consecutive_failures"] == 0


async def test_failed_trial_reopens_circuit():
    retry = handler(max_retries=1, circuit_failure_threshold=3, circuit_timeout=0)
    for _ in range(3):
        with pytest.raises(TransientGenerationError):
            await retry.execute_with_retry(FlakyCall([TransientGenerationError("down")]))
    assert retry.is_open

    with pytest.raises(TransientGenerationError):
        await retry.execute_with_retry(FlakyCall([TransientGenerationError("still down")]))
    assert retry.is_open


async def test_refusals_do_not_trip_the_circuit():
    retry = handler(circuit_failure_threshold=1)
    for _ in range(3):
        with pytest.raises(ContentPolicyError):
            await retry.execute_with_retry(FlakyCall([ContentPolicyError("refused")]))
    assert retry.state == "closed"
