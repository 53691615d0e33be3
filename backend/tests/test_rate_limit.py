import pytest

from saleflow.services.rate_limit import InMemoryCounterStore, SlidingWindowLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return SlidingWindowLimiter(InMemoryCounterStore(), limit=3, window_seconds=60, clock=clock)


def test_allows_up_to_limit_then_blocks(limiter):
    decisions = [limiter.check("sale:1") for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
    assert decisions[3].retry_after_seconds == 60


def test_keys_are_independent(limiter):
    for _ in range(3):
        limiter.check("sale:1")
    assert limiter.check("sale:2").allowed
    assert limiter.check("order:1").allowed


def test_window_slides(limiter, clock):
    limiter.check("k")
    clock.now += 30
    limiter.check("k")
    limiter.check("k")

    clock.now += 20
    blocked = limiter.check("k")
    assert not blocked.allowed
    assert blocked.retry_after_seconds == 10

    # first hit ages out
    clock.now += 10
    assert limiter.check("k").allowed
    assert not limiter.check("k").allowed


def test_rejected_hits_are_not_recorded(limiter, clock):
    for _ in range(3):
        limiter.check("k")
    for _ in range(10):
        limiter.check("k")

    clock.now += 60
    assert limiter.check("k").allowed


def test_reset_clears_key(limiter):
    for _ in range(3):
        limiter.check("k")
    limiter.store.reset("k")
    assert limiter.check("k").allowed


@pytest.mark.parametrize("kwargs", [{"limit": 0, "window_seconds": 60}, {"limit": 1, "window_seconds": 0}])
def test_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        SlidingWindowLimiter(InMemoryCounterStore(), **kwargs)


def test_idle_keys_are_swept(clock):
    store = InMemoryCounterStore(sweep_every=3)
    limiter = SlidingWindowLimiter(store, limit=3, window_seconds=60, clock=clock)
    limiter.check("sale:1")
    limiter.check("sale:2")
    assert len(store) == 2

    clock.now += 61
    limiter.check("sale:3")

    assert len(store) == 1
    assert limiter.check("sale:1").remaining == 2


def test_sweep_keeps_keys_inside_window(clock):
    store = InMemoryCounterStore(sweep_every=2)
    limiter = SlidingWindowLimiter(store, limit=3, window_seconds=60, clock=clock)
    limiter.check("sale:1")
    clock.now += 30
    limiter.check("sale:2")

    assert len(store) == 2
    assert limiter.check("sale:1").remaining == 1
