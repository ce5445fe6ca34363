import asyncio

from broadcast import EventHub
from conftest import open_repo
import init_db


def test_hub_fans_out_and_drops_oldest_when_full():
    async def scenario():
        hub = EventHub(queue_size=2)
        async with hub.subscribe() as q:
            assert hub.subscribers == 1
            for i in range(3):
                hub.publish({"type": "tick", "i": i})
            got = [q.get_nowait()["i"], q.get_nowait()["i"]]
        return got, hub.subscribers

    got, remaining = asyncio.run(scenario())
    assert got == [1, 2]
    assert remaining == 0


def test_publish_without_subscribers_is_noop():
    EventHub().publish({"type": "tick"})


def test_fund_context(tmp_path):
    async def scenario():
        repo = await open_repo(tmp_path / "init.db")
        try:
            first = await init_db.fund_context(repo, "alice", 500)
            second = await init_db.fund_context(repo, "alice", 25)
            return first, second
        finally:
            await repo.conn.close()

    assert asyncio.run(scenario()) == (500, 525)
