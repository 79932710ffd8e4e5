async def test_set_and_get_json_with_ttl(cache, redis):
    await cache.set_json("exchange:KRW:USD", {"rate": 0.00075}, ttl=3600)

    assert await cache.get_json("exchange:KRW:USD") == {"rate": 0.00075}
    assert 0 < await redis.ttl("exchange:KRW:USD") <= 3600


async def test_missing_key_returns_none(cache):
    assert await cache.get_json("nope") is None


async def test_unreadable_entry_is_discarded(cache, redis):
    await redis.set("broken", "{not json")

    assert await cache.get_json("broken") is None
    assert await redis.exists("broken") == 0


async def test_invalidate_pattern_removes_only_matching_keys(cache):
    await cache.set_json("inventory:alerts:a", {"id": "a"})
    await cache.set_json("inventory:alerts:b", {"id": "b"})
    await cache.set_json("inventory:metrics", {"total": 1})

    removed = await cache.invalidate_pattern("inventory:alerts:*")

    assert removed == 2
    assert await cache.keys("inventory:*") == ["inventory:metrics"]


async def test_set_json_if_absent_is_single_writer(cache):
    assert await cache.set_json_if_absent("webhook:receipt:1", {"n": 1}, ttl=60) is True
    assert await cache.set_json_if_absent("webhook:receipt:1", {"n": 2}, ttl=60) is False
    assert await cache.get_json("webhook:receipt:1") == {"n": 1}


async def test_get_or_set_loads_once(cache):
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        return {"value": calls}

    first = await cache.get_or_set("inventory:metrics", 60, loader)
    second = await cache.get_or_set("inventory:metrics", 60, loader)

    assert first == second == {"value": 1}
    assert calls == 1
