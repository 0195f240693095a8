"""Tests for peer session negotiation."""

from __future__ import annotations

import asyncio

import pytest

from peergate.core.config import GatewayConfig
from peergate.core.exceptions import NegotiationError, NegotiationTimeoutError, SignalingError
from peergate.protocol.signaling import Answer, Candidate, Offer
from peergate.session.negotiator import SessionNegotiator, parse_remote_candidate
from peergate.session.session import PeerSession, SessionState
from tests.conftest import FakePeerConnection, FakeSignaling

ANSWER_SDP = "v=0\r\no=- answer\r\n"
HOST_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2122260223 192.168.1.2 54321 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


def _negotiator(
    pc: FakePeerConnection | None = None, **config: object
) -> tuple[SessionNegotiator, FakePeerConnection, FakeSignaling]:
    pc = pc or FakePeerConnection()
    signaling = FakeSignaling()
    settings = {"negotiation_timeout": 2.0, **config}
    negotiator = SessionNegotiator(
        GatewayConfig(**settings),
        PeerSession(peer_id="gateway-test"),
        signaling=signaling,
        peer_connection_factory=lambda ice_servers: pc,
    )
    return negotiator, pc, signaling


def _answering(pc: FakePeerConnection, *, connect: bool = True):
    """Host double: answer every offer, then optionally bring the transport up."""

    async def answer(signaling: FakeSignaling, offer: Offer) -> None:
        await signaling.deliver(Answer(sdp=ANSWER_SDP))
        if connect:
            pc.connect()

    return answer


class TestSessionNegotiator:
    """Tests for offer/answer negotiation."""

    @pytest.mark.asyncio
    async def test_connects(self) -> None:
        """Test the happy path reaches CONNECTED with one complete offer."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc)

        session = await negotiator.ensure_ready()

        assert session.state is SessionState.CONNECTED
        assert session.connected_at is not None
        assert signaling.connected
        assert len(signaling.offers) == 1
        offer = signaling.offers[0]
        assert offer.target == "host-node"
        assert offer.sender == "gateway-test"
        assert "a=candidate" in offer.sdp
        assert pc.channels[0].label == "peergate"
        assert session.bootstrap is not None and session.bootstrap.is_open

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_attempt(self) -> None:
        """Test simultaneous ensure_ready calls produce a single offer."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc)

        results = await asyncio.gather(*(negotiator.ensure_ready() for _ in range(5)))

        assert all(result is negotiator.session for result in results)
        assert len(signaling.offers) == 1

    @pytest.mark.asyncio
    async def test_ready_again_returns_immediately(self) -> None:
        """Test a connected session is returned without renegotiating."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc)
        await negotiator.ensure_ready()

        await negotiator.ensure_ready()

        assert len(signaling.offers) == 1

    @pytest.mark.asyncio
    async def test_connected_before_gathering_is_not_ready(self) -> None:
        """Test transport connectivity alone does not make the session ready."""
        negotiator, pc, signaling = _negotiator(FakePeerConnection(auto_gather=False))
        signaling.on_offer = _answering(pc, connect=False)

        task = asyncio.create_task(negotiator.ensure_ready())
        await asyncio.sleep(0.01)
        assert negotiator.state is SessionState.GATHERING_CANDIDATES

        pc.set_connection_state("connected")
        await asyncio.sleep(0.01)

        assert not task.done()
        assert negotiator.state is SessionState.GATHERING_CANDIDATES
        assert signaling.offers == []
        assert not negotiator.offer_sent

        pc.complete_gathering()
        session = await asyncio.wait_for(task, 1.0)

        assert session.is_connected
        assert len(signaling.offers) == 1
        assert negotiator.offer_sent

    @pytest.mark.asyncio
    async def test_answer_without_transport_is_not_ready(self) -> None:
        """Test an applied answer waits for the transport to connect."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc, connect=False)

        task = asyncio.create_task(negotiator.ensure_ready())
        for _ in range(50):
            if negotiator.answer_applied:
                break
            await asyncio.sleep(0.01)

        assert negotiator.answer_applied
        assert not task.done()

        pc.channels[0].open()
        session = await asyncio.wait_for(task, 1.0)
        assert session.is_connected

    @pytest.mark.asyncio
    async def test_only_first_answer_applied(self) -> None:
        """Test later answers are ignored."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc)
        await negotiator.ensure_ready()

        await signaling.deliver(Answer(sdp="v=0\r\no=- second\r\n"))

        assert pc.remote_description_calls == 1
        assert pc.remoteDescription.sdp == ANSWER_SDP
        assert negotiator.state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_invalid_answer_fails(self) -> None:
        """Test a rejected remote description fails the session."""
        negotiator, pc, signaling = _negotiator()

        async def bad_answer(sig: FakeSignaling, offer: Offer) -> None:
            await sig.deliver(Answer(sdp="invalid"))

        signaling.on_offer = bad_answer

        with pytest.raises(NegotiationError, match="Invalid remote description"):
            await negotiator.ensure_ready()
        assert negotiator.state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_transport_failure_after_connect(self) -> None:
        """Test a failed transport moves a connected session to FAILED."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc)
        await negotiator.ensure_ready()

        pc.set_connection_state("failed")

        assert negotiator.state is SessionState.FAILED
        with pytest.raises(NegotiationError, match="failed"):
            await negotiator.ensure_ready()

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test an unanswered offer fails with NegotiationTimeoutError."""
        negotiator, pc, signaling = _negotiator(negotiation_timeout=0.05)

        with pytest.raises(NegotiationTimeoutError):
            await negotiator.ensure_ready()

        assert negotiator.state is SessionState.FAILED
        assert len(signaling.offers) == 1

    @pytest.mark.asyncio
    async def test_early_candidates_queued(self) -> None:
        """Test candidates received before the answer are added after it."""
        negotiator, pc, signaling = _negotiator()

        async def candidate_first(sig: FakeSignaling, offer: Offer) -> None:
            await sig.deliver(Candidate(candidate=HOST_CANDIDATE))
            assert pc.candidates == []
            await _answering(pc)(sig, offer)

        signaling.on_offer = candidate_first
        await negotiator.ensure_ready()

        assert len(pc.candidates) == 1
        candidate = pc.candidates[0]
        assert candidate.ip == "192.168.1.2"
        assert candidate.port == 54321
        assert candidate.sdpMid == "0"

    @pytest.mark.asyncio
    async def test_late_candidates_added_directly(self) -> None:
        """Test candidates after the answer are added immediately; end marker is skipped."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc)
        await negotiator.ensure_ready()

        await signaling.deliver(Candidate(candidate=HOST_CANDIDATE))
        await signaling.deliver(Candidate(candidate=None))
        await signaling.deliver(Candidate(candidate={"candidate": "", "sdpMid": "0"}))

        assert len(pc.candidates) == 1

    @pytest.mark.asyncio
    async def test_signaling_connect_failure(self) -> None:
        """Test an unreachable signaling server fails negotiation with SignalingError."""
        negotiator, pc, signaling = _negotiator()
        signaling.connect_error = SignalingError("Cannot reach signaling server")

        with pytest.raises(SignalingError):
            await negotiator.ensure_ready()
        assert negotiator.state is SessionState.FAILED
        assert signaling.offers == []

    @pytest.mark.asyncio
    async def test_signaling_loss_while_negotiating(self) -> None:
        """Test losing the control connection mid-negotiation fails the session."""
        negotiator, pc, signaling = _negotiator()

        task = asyncio.create_task(negotiator.ensure_ready())
        for _ in range(50):
            if signaling.offers:
                break
            await asyncio.sleep(0.01)

        signaling.drop(SignalingError("Signaling server closed the connection"))

        with pytest.raises(SignalingError):
            await task
        assert negotiator.state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_signaling_loss_after_connect(self) -> None:
        """Test losing the control connection also fails a connected session."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc)
        await negotiator.ensure_ready()

        signaling.drop(None)

        assert negotiator.state is SessionState.FAILED
        assert isinstance(negotiator.session.error, SignalingError)

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        """Test close tears down the connection and leaves the session FAILED."""
        negotiator, pc, signaling = _negotiator()
        signaling.on_offer = _answering(pc)
        await negotiator.ensure_ready()

        await negotiator.close()

        assert negotiator.state is SessionState.FAILED
        assert pc.connectionState == "closed"
        assert not signaling.connected
        assert all(channel.readyState == "closed" for channel in pc.channels)


class TestParseRemoteCandidate:
    """Tests for browser-style candidate conversion."""

    def test_parses_host_candidate(self) -> None:
        """Test the candidate line and media identifiers are carried over."""
        candidate = parse_remote_candidate(HOST_CANDIDATE)
        assert candidate is not None
        assert candidate.protocol == "udp"
        assert candidate.type == "host"
        assert candidate.sdpMLineIndex == 0

    def test_without_prefix(self) -> None:
        """Test a candidate line without the 'candidate:' prefix."""
        init = {"candidate": "1 1 udp 2122260223 10.0.0.5 5000 typ host", "sdpMid": "0"}
        candidate = parse_remote_candidate(init)
        assert candidate is not None
        assert candidate.ip == "10.0.0.5"

    def test_end_of_candidates(self) -> None:
        """Test the empty end-of-candidates marker yields None."""
        assert parse_remote_candidate({"candidate": ""}) is None
