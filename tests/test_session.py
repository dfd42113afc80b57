"""End-to-end session lifecycle tests over the in-memory link and frame source."""

import asyncio
import json

import pytest

from coach_engine.config import CoachEngineConfig
from coach_engine.errors import AuthError, DeviceError, LinkError, SessionStateError
from coach_engine.link import LinkState
from coach_engine.models import AudioFrame, SessionState
from coach_engine.session import SessionCallbacks, SessionManager

from fakes import (
    FakeConnector,
    FakeFrameSource,
    FakeTokenProvider,
    FakeWebSocket,
    RecordingSleep,
    spaced_words,
    transcript_message,
    wait_until,
)


@pytest.fixture
def config(tmp_path):
    return CoachEngineConfig().merge_patch({
        "feedback": {"stop_grace_sec": 0, "interval_sec": 0.05},
        "report": {"directory": str(tmp_path)},
        "service": {"session_begin_timeout": 0.5},
    })


class Harness:
    def __init__(self, config, *, tokens=None, fail_device=False, connector=None):
        self.connector = connector or FakeConnector()
        self.sources = []
        self.transcripts = []
        self.errors = []
        self.connections = []
        self.notices = []

        def make_source(audio_cfg):
            source = FakeFrameSource(audio_cfg, fail=fail_device)
            self.sources.append(source)
            return source

        self.manager = SessionManager(
            config,
            tokens or FakeTokenProvider(),
            frame_source_factory=make_source,
            connect=self.connector,
            link_sleep=RecordingSleep(),
            callbacks=SessionCallbacks(
                on_transcript=lambda text, final: self.transcripts.append((text, final)),
                on_connection_change=self.connections.append,
                on_notice=self.notices.append,
                on_error=self.errors.append,
            ),
        )

    @property
    def ws(self):
        return self.connector.created[-1]


@pytest.mark.asyncio
async def test_start_reports_active_status(config):
    h = Harness(config)
    session = await h.manager.start("presentation")

    status = h.manager.status()
    assert status["active"] is True
    assert status["sessionId"] == session.id
    assert status["sessionType"] == "presentation"
    assert status["state"] == "active"
    assert status["linkState"] == "active"
    assert len(status["tips"]) == 3
    assert h.connections == [True]
    await h.manager.stop()


@pytest.mark.asyncio
async def test_second_start_is_rejected_without_disturbing_first(config):
    h = Harness(config)
    session = await h.manager.start()

    with pytest.raises(SessionStateError):
        await h.manager.start("sales")

    assert h.manager.session is session
    assert h.manager.link.state is LinkState.ACTIVE
    assert len(h.connector.urls) == 1
    await h.manager.stop()


@pytest.mark.asyncio
async def test_unknown_session_type(config):
    h = Harness(config)
    with pytest.raises(ValueError):
        await h.manager.start("karaoke")
    assert not h.manager.active


@pytest.mark.asyncio
async def test_stop_when_idle_is_a_no_op(config, tmp_path):
    h = Harness(config)
    result = await h.manager.stop()
    assert result.stopped is False
    assert result.message == "no active session"
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_full_session_writes_report(config, tmp_path):
    h = Harness(config)
    await h.manager.start("interview")

    h.ws.push(transcript_message("PartialTranscript", "I really", spaced_words("I really")))
    text = "I really love working with great people."
    h.ws.push(transcript_message("FinalTranscript", text, spaced_words(text), confidence=0.93))
    await wait_until(lambda: h.manager.session.feedbacks)

    result = await h.manager.stop()

    assert result.stopped is True
    assert h.transcripts == [("I really", False), (text, True)]
    assert not h.manager.active
    assert h.sources[0].is_open is False
    assert result.report_path.parent == tmp_path

    data = json.loads(result.report_path.read_text())
    assert data["session"]["id"] == result.session_id
    assert data["session"]["type"] == "interview"
    assert data["session"]["error"] is None
    assert data["analytics"]["totalWords"] == 7
    assert len(data["transcripts"]) == 2
    assert len(data["finalTranscripts"]) == 1
    assert data["summary"]["totalFeedbacks"] == len(data["feedbacks"]) >= 4


@pytest.mark.asyncio
async def test_stop_counts_finals_that_arrived_after_the_last_tick(config):
    config = config.merge_patch({"feedback": {"interval_sec": 60}})
    h = Harness(config)
    await h.manager.start()

    h.ws.push(transcript_message("FinalTranscript", "one two three", spaced_words("one two three")))
    await wait_until(lambda: h.transcripts)
    result = await h.manager.stop()

    data = json.loads(result.report_path.read_text())
    assert data["analytics"]["totalWords"] == 3
    assert data["feedbacks"] == []


@pytest.mark.asyncio
async def test_device_failure_leaves_manager_idle(config, tmp_path):
    h = Harness(config, fail_device=True)
    with pytest.raises(DeviceError):
        await h.manager.start()
    assert not h.manager.active
    assert h.connector.urls == []
    assert h.manager.status() == {"active": False}
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_auth_failure_leaves_manager_idle(config, tmp_path):
    h = Harness(config, tokens=FakeTokenProvider(failures=10))
    with pytest.raises(AuthError):
        await h.manager.start()
    assert not h.manager.active
    assert h.sources[0].is_open is False
    assert h.errors == []
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_link_failure_ends_session_with_error_report(config):
    h = Harness(config)
    await h.manager.start()

    h.ws.drop(4001, "Not Authorized")
    await wait_until(lambda: not h.manager.active)

    assert len(h.errors) == 1
    assert h.errors[0].code == 4001
    report = json.loads(h.manager.last_report_path.read_text())
    assert "4001" in report["session"]["error"]
    assert (await h.manager.stop()).stopped is False


@pytest.mark.asyncio
async def test_link_failure_during_stop_grace_is_reported(config):
    config = config.merge_patch({"feedback": {"stop_grace_sec": 0.3}})
    h = Harness(config)
    await h.manager.start()

    stopping = asyncio.create_task(h.manager.stop())
    await wait_until(lambda: h.manager.session.state is SessionState.STOPPING)
    h.ws.drop(4001, "Not Authorized")
    result = await stopping

    assert len(h.errors) == 1
    assert h.errors[0].code == 4001
    assert result.stopped is True
    assert "4001" in result.message
    report = json.loads(result.report_path.read_text())
    assert "4001" in report["session"]["error"]


@pytest.mark.asyncio
async def test_stop_while_connecting_finishes_session_once_up(config, tmp_path):
    ws = FakeWebSocket(begin=False)
    h = Harness(config, connector=FakeConnector([ws]))

    starting = asyncio.create_task(h.manager.start())
    await wait_until(lambda: h.connector.created)
    assert h.manager.session.state is SessionState.CONNECTING

    stopping = asyncio.create_task(h.manager.stop())
    await asyncio.sleep(0.01)
    assert not stopping.done()
    ws.push({"message_type": "SessionBegins", "session_id": "sess-late"})

    session = await starting
    result = await stopping

    assert session.state is SessionState.CLOSED
    assert result.stopped is True
    assert result.session_id == session.id
    assert result.report_path.parent == tmp_path
    assert not h.manager.active
    assert h.manager.link.state is LinkState.CLOSED


@pytest.mark.asyncio
async def test_stop_while_connecting_reports_failed_start(config, tmp_path):
    ws = FakeWebSocket(begin=False)
    h = Harness(config, connector=FakeConnector([ws]))

    starting = asyncio.create_task(h.manager.start())
    await wait_until(lambda: h.connector.created)
    stopping = asyncio.create_task(h.manager.stop())

    with pytest.raises(LinkError):
        await starting
    result = await stopping

    assert result.stopped is False
    assert "failed to start" in result.message
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_reconnect_keeps_session_running(config):
    h = Harness(config)
    session = await h.manager.start()

    h.ws.drop(1006)
    await wait_until(lambda: len(h.connector.created) == 2 and h.manager.link.is_active)

    assert h.manager.session is session
    assert session.state is SessionState.ACTIVE
    assert h.connections == [True, False, True]
    await h.manager.stop()


@pytest.mark.asyncio
async def test_frames_reach_the_link(config):
    h = Harness(config)
    await h.manager.start()

    h.sources[0].push(AudioFrame(seq=0, pcm=b"\x10\x00" * 4, rms=0.25))
    await wait_until(lambda: h.ws.audio_frames)

    assert h.ws.audio_frames == [b"\x10\x00" * 4]
    assert h.manager.metrics.volume_rms == pytest.approx(0.25)
    await h.manager.stop()


@pytest.mark.asyncio
async def test_service_error_message_becomes_notice(config):
    h = Harness(config)
    await h.manager.start()

    h.ws.push({"error": "Audio duration is too short"})
    await wait_until(lambda: any("too short" in n for n in h.notices))

    assert h.manager.active
    await h.manager.stop()


@pytest.mark.asyncio
async def test_stop_cancels_timers_and_tasks(config):
    h = Harness(config)
    await h.manager.start()
    feedback = h.manager._feedback
    await h.manager.stop()
    await asyncio.sleep(0)

    assert not feedback.running
    assert h.manager.link.state is LinkState.CLOSED
