import asyncio

from huddle.registry import CLOSE_GOING_AWAY, CLOSE_NORMAL, CLOSE_WRITE_FAILED, ConnectionRegistry


async def test_register_issues_unique_live_ids(registry, join):
    ids = {join()[0] for _ in range(50)}
    assert len(ids) == 50
    assert len(registry) == 50
    assert all(registry.is_live(i) for i in ids)


async def test_release_is_idempotent(registry, join):
    released = []
    registry.on_release(released.append)
    cid, _ = join()

    assert registry.release(cid) is True
    assert registry.release(cid) is False
    assert released == [cid]
    assert not registry.is_live(cid)
    assert registry.release('never-registered') is False


async def test_deliver_keeps_fifo_order(registry, join):
    cid, sock = join()
    for i in range(20):
        assert registry.deliver(cid, f'{{"type":"n","data":{{"i":{i}}}}}')
    await registry.drain()
    assert [f['data']['i'] for f in sock.sent] == list(range(20))


async def test_deliver_to_released_connection_is_refused(registry, join):
    cid, sock = join()
    registry.release(cid)
    assert registry.deliver(cid, '{"type":"x"}') is False
    await asyncio.sleep(0)
    assert sock.sent == []


async def test_write_failure_releases_only_that_connection(registry, join):
    released = []
    registry.on_release(released.append)
    bad, _ = join(fail=True)
    good, sock = join()

    registry.deliver(bad, '{"type":"x"}')
    registry.deliver(good, '{"type":"x"}')
    await registry.drain()
    await asyncio.sleep(0)

    assert released == [bad]
    assert registry.is_live(good)
    assert sock.of('x') == [{'type': 'x'}]


async def test_full_outbox_drops_the_connection():
    registry = ConnectionRegistry(outbox_size=1)
    released = []
    registry.on_release(released.append)
    cid = registry.register(lambda frame: asyncio.sleep(0))

    # the writer has not run yet, so the second frame overflows
    assert registry.deliver(cid, '{"type":"a"}') is True
    assert registry.deliver(cid, '{"type":"b"}') is False
    assert released == [cid]


async def test_slow_recipient_does_not_hold_up_others(registry, join):
    slow, slow_sock = join(delay=0.5)
    fast, fast_sock = join()
    registry.deliver(slow, '{"type":"x"}')
    registry.deliver(fast, '{"type":"x"}')
    await asyncio.sleep(0.05)
    assert fast_sock.sent == [{'type': 'x'}]
    assert slow_sock.sent == []
    registry.close_all()


async def test_close_all(registry, join):
    for _ in range(3):
        join()
    registry.close_all()
    assert len(registry) == 0
    await registry.wait_closed()


async def test_release_closes_the_socket_once(registry, join):
    cid, sock = join()
    registry.release(cid)
    registry.release(cid, CLOSE_WRITE_FAILED)
    await registry.wait_closed()
    assert sock.closed == (CLOSE_NORMAL, '')


async def test_write_failure_closes_the_socket(registry, join):
    bad, sock = join(fail=True)
    registry.deliver(bad, '{"type":"x"}')
    await registry.drain()
    await registry.wait_closed()
    assert sock.closed == (CLOSE_WRITE_FAILED, 'write failed')


async def test_overflow_closes_the_socket():
    registry = ConnectionRegistry(outbox_size=1)
    closes = []

    async def close(code, reason):
        closes.append(code)

    cid = registry.register(lambda frame: asyncio.sleep(0), close)
    registry.deliver(cid, '{"type":"a"}')
    registry.deliver(cid, '{"type":"b"}')
    await registry.wait_closed()
    assert closes == [CLOSE_WRITE_FAILED]


async def test_shutdown_closes_with_going_away(registry, join):
    socks = [join()[1] for _ in range(2)]
    registry.close_all()
    await registry.wait_closed()
    assert [s.closed[0] for s in socks] == [CLOSE_GOING_AWAY] * 2


async def test_failing_close_is_tolerated(registry):
    async def close(code, reason):
        raise RuntimeError('already closed')

    cid = registry.register(lambda frame: asyncio.sleep(0), close)
    assert registry.release(cid)
    await registry.wait_closed()
