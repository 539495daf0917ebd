from consensus.services.cache import TTLCache


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache = TTLCache(ttl=5, clock=clock)
    cache.set("progress", {"tier": 1})

    clock.now += 4.9
    assert cache.get("progress") == {"tier": 1}
    clock.now += 0.1
    assert cache.get("progress") is None
    assert len(cache) == 0


def test_zero_ttl_disables_caching() -> None:
    cache = TTLCache(ttl=0)
    cache.set("progress", 1)
    assert cache.get("progress") is None


def test_oldest_entry_is_evicted_when_full() -> None:
    clock = _Clock()
    cache = TTLCache(ttl=60, max_entries=2, clock=clock)
    cache.set("a", 1)
    clock.now += 1
    cache.set("b", 2)
    cache.set("c", 3)
    assert cache.get("a") is None
    assert (cache.get("b"), cache.get("c")) == (2, 3)


def test_get_or_set_loads_once_per_ttl() -> None:
    clock = _Clock()
    cache = TTLCache(ttl=5, clock=clock)
    calls = []

    def load() -> int:
        calls.append(1)
        return len(calls)

    assert cache.get_or_set("key", load) == 1
    assert cache.get_or_set("key", load) == 1
    clock.now += 5
    assert cache.get_or_set("key", load) == 2
    assert len(calls) == 2

    cache.delete("key")
    assert cache.get("key") is None
