#!/usr/bin/env python3
"""Live demo: three headless clients on one relay.

alice draws and bob and carol see the strokes; then alice calls bob through
the relay (aiortc on both ends), they connect, and alice hangs up.

    python3 demo_live.py            # local relay on ephemeral ports
    python3 demo_live.py --stun     # use public STUN servers too
"""
import argparse, asyncio

from huddle.call import CallPeer
from huddle.client import HuddleClient
from huddle.config import ISOLATED, Settings, configure_logging
from huddle.server import RelayServer


async def pump(peer: CallPeer, stop: asyncio.Event):
    while not stop.is_set():
        try:
            frame = await peer.client.receive(timeout=0.5)
        except asyncio.TimeoutError:
            continue
        await peer.handle(frame)


async def demo(use_stun: bool):
    settings = Settings(mode=ISOLATED, host='127.0.0.1', port=0, socket_port=0)
    async with RelayServer(settings) as server:
        url = f'ws://127.0.0.1:{server.realtime_port}'
        print(f'[demo] relay on {url}')

        alice, bob, carol = HuddleClient(url), HuddleClient(url), HuddleClient(url)
        for c in (alice, bob, carol):
            await c.connect()
        print(f'[demo] alice={alice.connection_id[:8]} bob={bob.connection_id[:8]} carol={carol.connection_id[:8]}')

        # === BOARD ===
        for i in range(3):
            await alice.draw(10 + i, 20 + i, 'blue')
        for name, c in (('bob', bob), ('carol', carol)):
            for _ in range(3):
                frame = await c.expect('draw_line')
                print(f'  {name} got stroke {frame.data}')

        # === CALL ===
        ice = None if use_stun else []
        caller, callee = CallPeer(alice, ice), CallPeer(bob, ice)
        stop = asyncio.Event()
        pumps = [asyncio.create_task(pump(p, stop)) for p in (caller, callee)]
        print('[demo] alice calling bob...')
        await caller.call(bob.connection_id)
        try:
            await caller.wait_connected(timeout=20)
            await callee.wait_connected(timeout=20)
            print(f'[demo] alice: {caller.status} / bob: {callee.status}')
        except asyncio.TimeoutError:
            print(f'[demo] FAILED to connect (alice: {caller.status}, bob: {callee.status})')

        await caller.hang_up()
        await asyncio.sleep(0.5)
        print(f'[demo] after hang-up bob says: {callee.status}')
        stop.set()
        await asyncio.gather(*pumps)

        for c in (alice, bob, carol):
            await c.close()
    print('[demo] Done.')


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--stun', action='store_true', help='Gather candidates through public STUN servers')
    args = p.parse_args()
    configure_logging('WARNING')
    asyncio.run(demo(args.stun))


if __name__ == '__main__':
    main()
