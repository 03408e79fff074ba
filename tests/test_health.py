import pytest

from switchbot_fan_bridge.health import BackoffPolicy, HealthMonitor


def test_constant_backoff() -> None:
    policy = BackoffPolicy(base=1.5, factor=1.0, maximum=10.0)
    assert policy.iter_delays(4) == (1.5, 1.5, 1.5)
    assert policy.iter_delays(1) == ()


def test_exponential_backoff_is_capped() -> None:
    policy = BackoffPolicy(base=1.0, factor=2.0, maximum=5.0)
    assert policy.delay(0) == 0.0
    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert policy.iter_delays(5) == (1.0, 2.0, 4.0, 5.0)


@pytest.mark.asyncio
async def test_circuit_opens_after_threshold() -> None:
    health = HealthMonitor(("radio",), failure_threshold=2, cooldown_seconds=60.0)

    await health.record_failure("radio", RuntimeError("adapter busy"))
    allowed, _ = await health.allow_attempt("radio")
    assert allowed is True
    assert (await health.snapshot())["radio"]["status"] == "degraded"

    await health.record_failure("radio", RuntimeError("adapter busy"))
    allowed, remaining = await health.allow_attempt("radio")
    assert allowed is False
    assert remaining > 0
    snapshot = await health.snapshot()
    assert snapshot["radio"]["status"] == "suppressed"
    assert snapshot["radio"]["last_error"] == "adapter busy"


@pytest.mark.asyncio
async def test_success_resets_failures() -> None:
    health = HealthMonitor(("api",), failure_threshold=1, cooldown_seconds=0.0)
    await health.record_failure("api")
    await health.record_success("api")

    snapshot = await health.snapshot()
    assert snapshot["api"]["status"] == "ok"
    assert snapshot["api"]["failures"] == 0
    assert (await health.allow_attempt("api"))[0] is True
