import asyncio
from unittest.mock import AsyncMock

import pytest

from rtcpipe.codec import encode
from rtcpipe.errors import ProtocolError
from rtcpipe.handshake import Session, State
from rtcpipe.signaling import CloseCode
from rtcpipe.wormhole import Wormhole

SECRET = b"\x01\x02"
CANDIDATE = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


async def until(predicate, tries: int = 500) -> None:
    for _ in range(tries):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


async def _meet(broker, make_provider, joiner_secret=SECRET):
    c_sig, j_sig = broker(7)
    creator = Wormhole(c_sig, Session.creator(SECRET), make_provider())
    creator.start()
    code, cpc = await creator.signal()

    joiner = Wormhole(j_sig, Session.joiner(encode(7, joiner_secret)), make_provider())
    joiner.start()
    no_code, jpc = await joiner.signal()
    assert no_code is None
    return code, (creator, c_sig, cpc), (joiner, j_sig, jpc)


def test_rendezvous(broker, make_provider):
    async def run():
        code, (creator, c_sig, cpc), (joiner, j_sig, jpc) = await _meet(broker, make_provider)
        assert code == "7-aeba"

        fp_c, fp_j = await asyncio.wait_for(
            asyncio.gather(creator.finish(), joiner.finish()), 5)
        assert fp_c == fp_j

        assert cpc.local.type == "offer"
        assert cpc.remote.type == "answer"
        assert jpc.remote.type == "offer"
        assert jpc.local.type == "answer"
        assert creator.state is State.AWAITING_CANDIDATES
        assert joiner.state is State.AWAITING_CANDIDATES

        cpc.trickle(CANDIDATE)
        await until(lambda: jpc.candidates)
        assert jpc.candidates == [CANDIDATE]

    asyncio.run(run())


def test_offer_and_candidates_wait_for_the_joiner(broker, make_provider):
    async def run():
        _, (creator, c_sig, cpc), (joiner, j_sig, jpc) = await _meet(broker, make_provider)
        c_done = asyncio.ensure_future(creator.finish())

        await until(lambda: joiner.state is State.AWAITING_CANDIDATES)
        cpc.trickle(CANDIDATE)
        await until(lambda: len(joiner._deferred) == 2)
        assert jpc.calls == []

        fp = await asyncio.wait_for(joiner.finish(), 5)
        assert fp == await asyncio.wait_for(c_done, 5)
        assert jpc.calls[-4:] == [
            "set_remote_description",
            "create_answer",
            "set_local_description",
            "add_candidate",
        ]

    asyncio.run(run())


def test_bad_key(broker, make_provider):
    async def run():
        _, (creator, c_sig, cpc), (joiner, j_sig, jpc) = await _meet(
            broker, make_provider, joiner_secret=b"\x01\x03")
        c_done = asyncio.ensure_future(creator.finish())

        with pytest.raises(ProtocolError, match="bad key"):
            await asyncio.wait_for(joiner.finish(), 5)
        assert joiner.state is State.ERROR
        assert j_sig.closed_with == CloseCode.BAD_KEY == 4005
        assert "set_remote_description" not in jpc.calls

        with pytest.raises(ProtocolError):
            await asyncio.wait_for(c_done, 5)
        assert creator.state is State.ERROR

    asyncio.run(run())


def test_close_reports_connection_type(broker, make_provider):
    async def run():
        _, (creator, c_sig, cpc), (joiner, j_sig, jpc) = await _meet(broker, make_provider)
        await asyncio.wait_for(asyncio.gather(creator.finish(), joiner.finish()), 5)

        cpc.state = "completed"
        cpc.stats = [
            {"type": "candidate-pair", "state": "succeeded", "localCandidateId": "L1"},
            {"type": "local-candidate", "id": "L1", "candidateType": "srflx"},
        ]
        await creator.close()
        assert c_sig.closed_with == CloseCode.SUCCESS_DIRECT

        # The broker hangs up on the joiner, which is not an error.
        await asyncio.sleep(0.05)
        assert joiner.state is State.AWAITING_CANDIDATES

    asyncio.run(run())


def test_broker_rejects_slot(make_provider):
    from conftest import FakeSignaling
    from rtcpipe.signaling import ChannelClosed

    async def run():
        sig = FakeSignaling()
        sig.inbox.put_nowait(ChannelClosed(CloseCode.NO_SUCH_SLOT))
        wh = Wormhole(sig, Session.joiner("9-aeba"), make_provider())
        wh.start()
        with pytest.raises(ProtocolError, match="no such slot"):
            await asyncio.wait_for(wh.signal(), 5)
        assert wh.state is State.ERROR

    asyncio.run(run())


def test_creator_transport_failure_fails_the_session(broker, make_provider):
    async def run():
        _, (creator, c_sig, cpc), (joiner, j_sig, jpc) = await _meet(broker, make_provider)
        cpc.set_remote_description = AsyncMock(side_effect=ValueError("malformed sdp"))
        j_done = asyncio.ensure_future(joiner.finish())

        with pytest.raises(ProtocolError, match="malformed sdp"):
            await asyncio.wait_for(creator.finish(), 5)
        assert creator.state is State.ERROR
        assert c_sig.closed_with == CloseCode.BAD_KEY

        # The joiner already answered, then hears the bye.
        await asyncio.wait_for(j_done, 5)
        await until(lambda: joiner.state is State.ERROR)
        assert j_sig.closed_with == CloseCode.PEER_HUNG_UP

    asyncio.run(run())


def test_joiner_transport_failure_fails_the_session(broker, make_provider):
    async def run():
        _, (creator, c_sig, cpc), (joiner, j_sig, jpc) = await _meet(broker, make_provider)
        jpc.set_remote_description = AsyncMock(side_effect=ValueError("malformed sdp"))
        c_done = asyncio.ensure_future(creator.finish())

        await until(lambda: joiner.state is State.AWAITING_CANDIDATES)
        cpc.trickle(CANDIDATE)
        await until(lambda: len(joiner._deferred) == 2)

        with pytest.raises(ProtocolError, match="malformed sdp"):
            await asyncio.wait_for(joiner.finish(), 5)
        assert joiner.state is State.ERROR
        assert j_sig.closed_with == CloseCode.BAD_KEY
        assert len(joiner._deferred) == 0
        assert "add_candidate" not in jpc.calls

        with pytest.raises(ProtocolError, match="peer hung up"):
            await asyncio.wait_for(c_done, 5)

    asyncio.run(run())


def test_close_before_connecting_leaves_the_broker(broker, make_provider):
    async def run():
        _, (creator, c_sig, cpc), _ = await _meet(broker, make_provider)
        cpc.state = "checking"
        await creator.close()
        assert c_sig.closed_with == 1000
        await asyncio.wait_for(creator._task, 5)

    asyncio.run(run())
