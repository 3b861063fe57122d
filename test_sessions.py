import pytest

from huddle.errors import AlreadyInSession, InvalidSignal, TargetUnavailable
from huddle.registry import CLOSE_WRITE_FAILED
from huddle.sessions import DISCONNECT, HANG_UP, CallState

OFFER = {'sdp': {'type': 'offer', 'sdp': 'v=0...'}}
ANSWER = {'sdp': {'type': 'answer', 'sdp': 'v=0...'}}
CANDIDATE = {'candidate': {'candidate': 'candidate:1 1 udp 1 10.0.0.1 5000 typ host', 'sdpMid': '0'}}


async def test_offer_to_live_peer_opens_session(registry, tracker, join):
    a, _ = join()
    b, b_sock = join()

    session = tracker.relay_offer(a, b, dict(OFFER, targetId=b))
    await registry.drain()

    assert session.state is CallState.OFFERING
    assert (session.initiator, session.responder) == (a, b)
    [offer] = b_sock.of('video-offer')
    assert offer['data']['sdp'] == OFFER['sdp']
    assert offer['data']['fromId'] == a
    assert offer['data']['sessionId'] == session.session_id


async def test_offer_to_missing_peer_creates_nothing(tracker, join):
    a, _ = join()
    with pytest.raises(TargetUnavailable) as exc:
        tracker.relay_offer(a, 'ghost', OFFER)
    assert exc.value.reason == 'peer not found'
    assert len(tracker) == 0
    assert tracker.session_for(a) is None


async def test_offer_answer_then_disconnect(registry, tracker, join):
    a, a_sock = join()
    b, b_sock = join()

    session = tracker.relay_offer(a, b, OFFER)
    tracker.relay_answer(b, a, ANSWER)
    await registry.drain()
    assert session.state is CallState.ANSWERING
    assert a_sock.of('video-answer')[0]['data']['fromId'] == b

    registry.release(a)
    registry.release(a)
    await registry.drain()

    assert session.state is CallState.CLOSED
    assert len(tracker) == 0
    assert b_sock.of('call-closed') == [{'type': 'call-closed', 'data': {
        'sessionId': session.session_id, 'peerId': a, 'reason': DISCONNECT,
    }}]


async def test_answer_needs_a_pending_offer(tracker, join):
    a, _ = join()
    b, _ = join()
    with pytest.raises(InvalidSignal):
        tracker.relay_answer(b, a, ANSWER)

    tracker.relay_offer(a, b, OFFER)
    with pytest.raises(InvalidSignal):
        tracker.relay_answer(a, b, ANSWER)  # the caller cannot answer itself
    tracker.relay_answer(b, a, ANSWER)
    with pytest.raises(InvalidSignal):
        tracker.relay_answer(b, a, ANSWER)  # already answered


async def test_candidates_before_answer_and_after_connect_are_relayed(registry, tracker, join):
    a, a_sock = join()
    b, b_sock = join()

    session = tracker.relay_offer(a, b, OFFER)
    tracker.relay_ice_candidate(a, b, CANDIDATE)
    tracker.relay_ice_candidate(b, a, CANDIDATE)
    tracker.relay_answer(b, a, ANSWER)
    tracker.notify_connected(session.session_id, a)
    tracker.notify_connected(session.session_id, b)
    assert session.state is CallState.CONNECTED
    tracker.relay_ice_candidate(a, b, CANDIDATE)
    await registry.drain()

    assert len(b_sock.of('ice-candidate')) == 2
    assert len(a_sock.of('ice-candidate')) == 1
    assert b_sock.of('ice-candidate')[0]['data']['candidate'] == CANDIDATE['candidate']


async def test_candidate_outside_a_call_is_rejected(tracker, join):
    a, _ = join()
    b, _ = join()
    c, _ = join()
    with pytest.raises(InvalidSignal):
        tracker.relay_ice_candidate(a, b, CANDIDATE)
    tracker.relay_offer(a, b, OFFER)
    with pytest.raises(InvalidSignal):
        tracker.relay_ice_candidate(a, c, CANDIDATE)


async def test_connected_needs_an_answer(tracker, join):
    a, _ = join()
    b, _ = join()
    session = tracker.relay_offer(a, b, OFFER)
    with pytest.raises(InvalidSignal):
        tracker.notify_connected(session.session_id, b)
    with pytest.raises(InvalidSignal):
        tracker.notify_connected('nope', a)


async def test_busy_peers_refuse_a_second_call(tracker, join):
    a, _ = join()
    b, _ = join()
    c, _ = join()
    tracker.relay_offer(a, b, OFFER)

    with pytest.raises(AlreadyInSession) as exc:
        tracker.relay_offer(c, b, OFFER)
    assert exc.value.connection_id == b
    with pytest.raises(AlreadyInSession):
        tracker.relay_offer(a, c, OFFER)
    assert tracker.session_for(c) is None
    assert len(tracker) == 1


async def test_reoffer_between_same_pair_renegotiates(tracker, join):
    a, _ = join()
    b, _ = join()
    first = tracker.relay_offer(a, b, OFFER)
    tracker.relay_answer(b, a, ANSWER)

    again = tracker.relay_offer(b, a, OFFER)
    assert again is first
    assert again.state is CallState.OFFERING
    assert (again.initiator, again.responder) == (b, a)
    tracker.relay_answer(a, b, ANSWER)
    assert again.state is CallState.ANSWERING


async def test_cannot_call_yourself(tracker, join):
    a, _ = join()
    with pytest.raises(InvalidSignal):
        tracker.relay_offer(a, a, OFFER)


async def test_hang_up_notifies_both_parties_once(registry, tracker, join):
    a, a_sock = join()
    b, b_sock = join()
    session = tracker.relay_offer(a, b, OFFER)

    assert tracker.close(session.session_id, HANG_UP) is session
    assert tracker.close(session.session_id, HANG_UP) is None
    await registry.drain()

    assert [f['data']['reason'] for f in a_sock.of('call-closed')] == [HANG_UP]
    assert [f['data']['peerId'] for f in b_sock.of('call-closed')] == [a]
    # both are free for a new call
    assert tracker.relay_offer(b, a, OFFER).session_id != session.session_id


async def test_connected_needs_both_reports(tracker, join):
    a, _ = join()
    b, _ = join()
    c, _ = join()
    session = tracker.relay_offer(a, b, OFFER)
    tracker.relay_answer(b, a, ANSWER)

    tracker.notify_connected(session.session_id, a)
    tracker.notify_connected(session.session_id, a)
    assert session.state is CallState.ANSWERING
    with pytest.raises(InvalidSignal):
        tracker.notify_connected(session.session_id, c)

    tracker.notify_connected(session.session_id, b)
    assert session.state is CallState.CONNECTED

    # renegotiation starts the count over
    tracker.relay_offer(b, a, OFFER)
    tracker.relay_answer(a, b, ANSWER)
    tracker.notify_connected(session.session_id, b)
    assert session.state is CallState.ANSWERING


async def test_answer_or_candidate_to_departed_peer(registry, tracker, join):
    a, _ = join()
    b, _ = join()
    with pytest.raises(TargetUnavailable):
        tracker.relay_answer(b, 'ghost', ANSWER)
    with pytest.raises(TargetUnavailable):
        tracker.relay_ice_candidate(b, 'ghost', CANDIDATE)

    tracker.relay_offer(a, b, OFFER)
    registry.release(a)
    with pytest.raises(TargetUnavailable) as exc:
        tracker.relay_answer(b, a, ANSWER)
    assert exc.value.target_id == a
    with pytest.raises(TargetUnavailable):
        tracker.relay_ice_candidate(b, a, CANDIDATE)


async def test_write_failure_closes_the_call_once(registry, tracker, join):
    a, a_sock = join(fail=True)
    b, b_sock = join()
    session = tracker.relay_offer(a, b, OFFER)

    # the answer is the first frame written to a, and the write fails
    tracker.relay_answer(b, a, ANSWER)
    await registry.drain()
    await registry.wait_closed()
    await registry.drain()

    assert not registry.is_live(a)
    assert a_sock.closed[0] == CLOSE_WRITE_FAILED
    assert session.state is CallState.CLOSED
    assert len(tracker) == 0
    assert b_sock.of('call-closed') == [{'type': 'call-closed', 'data': {
        'sessionId': session.session_id, 'peerId': a, 'reason': DISCONNECT,
    }}]
    assert tracker.session_for(b) is None
