import asyncio

import pytest
import redis.asyncio as redis

from paywizard.infra.sql import make_async_engine, make_gate
from paywizard.model.runstore import MAX_RUNS, MemoryRunStore
from paywizard.model.runstore._base import decode_runs, encode_runs
from paywizard.model.runstore._redis import RedisRunStore, k_runs
from paywizard.model.runstore._sql import SqlRunStore, create_schema


async def test_keeps_five_most_recent_first(store, saved_run_factory):
    for i in range(1, 7):
        await store.append(saved_run_factory(run_key=f"run_{i}"))

    runs = await store.load_all()
    assert len(runs) == MAX_RUNS
    assert [r.runKey for r in runs] == [
        "run_6", "run_5", "run_4", "run_3", "run_2",
    ]


async def test_missing_record_is_empty(store):
    assert await store.load_all() == []


@pytest.mark.parametrize("raw", [
    "{not json", "", "42", '{"runKey": "x"}', "null",
    '[{"runKey": "a", "savedAt": "b", "data": {"steps": ["x"]}}]',
    '[{"runKey": "a", "savedAt": "b", "data": {"steps": "xy"}}]',
    '[{"runKey": "a", "savedAt": "b", "data": {"steps": 7}}]',
    '[{"runKey": "a", "savedAt": "b", "data": {"steps": [{"seq": "?"}]}}]',
])
async def test_corrupt_record_is_empty(raw):
    store = MemoryRunStore(data={"__kkb_last_runs__": raw})
    assert await store.load_all() == []


async def test_append_over_corrupt_record(saved_run_factory):
    store = MemoryRunStore(data={
        "__kkb_last_runs__":
            '[{"runKey": "a", "savedAt": "b", "data": {"steps": ["x"]}}]',
    })
    await store.append(saved_run_factory(run_key="run_new"))
    assert [r.runKey for r in await store.load_all()] == ["run_new"]


async def test_malformed_entries_are_skipped(saved_run_factory):
    good = saved_run_factory(run_key="run_ok")
    raw = encode_runs([good])[:-1] + ', {"runKey": "bad"}, 7]'
    runs = decode_runs(raw)
    assert [r.runKey for r in runs] == ["run_ok"]


async def test_stores_sharing_a_medium_see_each_other(saved_run_factory):
    medium = {}
    a = MemoryRunStore(data=medium)
    b = MemoryRunStore(data=medium)
    await a.append(saved_run_factory(run_key="from_a"))
    await b.append(saved_run_factory(run_key="from_b"))
    assert [r.runKey for r in await a.load_all()] == ["from_b", "from_a"]


async def test_round_trips_run_fields(store, saved_run_factory):
    run = saved_run_factory(status="error")
    run.data.params = {"scenarios": ["CANCEL"]}
    await store.append(run)
    loaded = (await store.load_all())[0]
    assert loaded.to_dict() == run.to_dict()


class FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.values = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise redis.ConnectionError("redis down")
        return self.values.get(key)

    async def set(self, key, value):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.values[key] = value


async def test_redis_store(saved_run_factory):
    r = FakeRedis()
    store = RedisRunStore(r=r)
    await store.append(saved_run_factory(run_key="run_r"))

    assert k_runs("__kkb_last_runs__") in r.values
    assert [x.runKey for x in await store.load_all()] == ["run_r"]


async def test_redis_store_reads_bytes(saved_run_factory):
    r = FakeRedis()
    r.values[k_runs("k")] = encode_runs([saved_run_factory()]).encode()
    store = RedisRunStore(r=r, key="k")
    assert len(await store.load_all()) == 1


async def test_redis_outage_never_raises(saved_run_factory, capsys):
    store = RedisRunStore(r=FakeRedis(fail=True))
    await store.append(saved_run_factory())
    assert await store.load_all() == []
    assert "redis down" in capsys.readouterr().out


async def test_sql_store(tmp_path, saved_run_factory):
    url = f"sqlite:///{tmp_path / 'runs.db'}"
    engine, sessions, gated = make_async_engine(url)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        store = SqlRunStore(sessions=sessions, gated=gated)

        assert await store.load_all() == []
        for i in range(1, 7):
            await store.append(saved_run_factory(run_key=f"run_{i}"))

        runs = await store.load_all()
        assert [r.runKey for r in runs] == [
            "run_6", "run_5", "run_4", "run_3", "run_2",
        ]
    finally:
        await engine.dispose()


async def test_sql_store_without_schema_degrades(tmp_path, saved_run_factory):
    engine, sessions, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'empty.db'}"
    )
    try:
        store = SqlRunStore(sessions=sessions, gated=gated)
        await store.append(saved_run_factory())
        assert await store.load_all() == []
    finally:
        await engine.dispose()


async def test_gate_caps_concurrent_history_io():
    gated = make_gate(2)
    inside = 0
    peak = 0

    async def work():
        nonlocal inside, peak
        async with gated():
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(*(work() for _ in range(6)))
    assert peak == 2
    assert inside == 0
