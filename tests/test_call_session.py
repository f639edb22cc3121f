from __future__ import annotations

import asyncio

import pytest
from fakes import (
    LOUD,
    SILENT,
    FakeConnector,
    FakeTwilioWebSocket,
    media_frame,
    start_frame,
    stop_frame,
    wait_for,
)

from calls.arbiter import TurnState
from calls.errors import MissingCredentialError, SessionClosedError
from calls.session import CallSession
from config.settings import Settings


def make_settings(**overrides) -> Settings:
    values = dict(
        openai_api_key="sk-test",
        realtime_instructions="Be brief.",
        speech_rms_threshold=0.0,
        cancel_settle_ms=0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def start_session(settings: Settings | None = None, connector: FakeConnector | None = None):
    ws = FakeTwilioWebSocket()
    connector = connector or FakeConnector()
    session = CallSession.open(ws, settings or make_settings(), connector=connector)
    task = asyncio.create_task(session.run())
    return session, task, ws, connector


def assistant_payloads(ws: FakeTwilioWebSocket) -> list[str]:
    return [m["media"]["payload"] for m in ws.sent_of("media")]


def test_open_without_credential_fails_before_any_socket_work():
    ws = FakeTwilioWebSocket()
    connector = FakeConnector()

    with pytest.raises(MissingCredentialError):
        CallSession.open(ws, make_settings(openai_api_key=None), connector=connector)

    assert connector.calls == []


@pytest.mark.asyncio
async def test_scenario_full_turn_end_to_end():
    session, task, ws, connector = await start_session()
    rt = connector.socket

    ws.push(start_frame("A1"))
    ws.push(media_frame("eDE="))
    ws.push(media_frame("eDI="))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 2)
    assert rt.types()[0] == "session.update"

    rt.emit({"type": "input_audio_buffer.speech_stopped"})
    rt.emit({"type": "input_audio_buffer.committed", "item_id": "i1"})
    await wait_for(lambda: len(rt.sent_of("response.create")) == 1)

    rt.emit({"type": "response.created", "response": {"id": "r1"}})
    rt.emit({"type": "response.audio.delta", "response_id": "r1", "delta": "ZDE="})
    rt.emit({"type": "response.audio.delta", "response_id": "r1", "delta": "ZDI="})
    rt.emit({"type": "response.done", "response": {"id": "r1", "status": "completed"}})
    await wait_for(lambda: session.stats.responses_completed == 1)

    assert assistant_payloads(ws) == ["ZDE=", "ZDI="]
    assert all(m["streamSid"] == "A1" for m in ws.sent)
    assert session.state in (TurnState.LISTENING, TurnState.IDLE)
    assert len(rt.sent_of("response.create")) == 1

    ws.push(stop_frame("A1"))
    await asyncio.wait_for(task, 1.0)
    assert session.close_reason == "caller hung up"


@pytest.mark.asyncio
async def test_scenario_barge_in_end_to_end():
    session, task, ws, connector = await start_session()
    rt = connector.socket

    ws.push(start_frame("A1"))
    ws.push(media_frame("eDE="))
    ws.push(media_frame("eDI="))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 2)
    rt.emit({"type": "input_audio_buffer.committed"})
    await wait_for(lambda: len(rt.sent_of("response.create")) == 1)
    rt.emit({"type": "response.created", "response": {"id": "r1"}})
    rt.emit({"type": "response.audio.delta", "response_id": "r1", "delta": "ZDE="})
    await wait_for(lambda: len(ws.sent_of("media")) == 1)

    ws.push(media_frame("eDM="))
    await wait_for(lambda: len(ws.sent_of("clear")) == 1)
    assert rt.sent_of("response.cancel") == [{"type": "response.cancel", "response_id": "r1"}]
    assert session.state is TurnState.LISTENING

    rt.emit({"type": "response.audio.delta", "response_id": "r1", "delta": "ZDI="})
    rt.emit({"type": "response.done", "response": {"id": "r1", "status": "cancelled"}})
    rt.emit({"type": "session.updated"})
    await wait_for(lambda: rt.sent_of("input_audio_buffer.append")[-1]["audio"] == "eDM=")
    await asyncio.sleep(0.05)

    assert assistant_payloads(ws) == ["ZDE="]
    assert len(rt.sent_of("response.cancel")) == 1
    assert len(ws.sent_of("clear")) == 1
    assert session.stats.barge_ins == 1

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_silent_frames_do_not_interrupt_when_gate_is_enabled():
    session, task, ws, connector = await start_session(
        make_settings(speech_rms_threshold=500.0, speech_start_frames=1)
    )
    rt = connector.socket

    ws.push(start_frame("A1"))
    ws.push(media_frame(LOUD))
    # Enough quiet frames to outlast the hangover and close the gate.
    for _ in range(11):
        ws.push(media_frame(SILENT))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 12)
    assert session.state is TurnState.LISTENING
    rt.emit({"type": "input_audio_buffer.committed"})
    rt.emit({"type": "response.created", "response": {"id": "r1"}})
    rt.emit({"type": "response.audio.delta", "response_id": "r1", "delta": "ZDE="})
    await wait_for(lambda: session.state is TurnState.RESPONDING)

    for _ in range(15):
        ws.push(media_frame(SILENT))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 27)

    assert rt.sent_of("response.cancel") == []
    assert ws.sent_of("clear") == []
    assert session.state is TurnState.RESPONDING

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_audio_before_endpoint_ready_is_drained_in_order():
    gate = asyncio.Event()
    session, task, ws, connector = await start_session(connector=FakeConnector(gate=gate))
    rt = connector.socket

    ws.push(start_frame("A1"))
    for payload in ("eDE=", "eDI=", "eDM="):
        ws.push(media_frame(payload))
    await wait_for(lambda: session.stats.caller_frames == 3)
    assert rt.sent == []

    gate.set()
    await wait_for(lambda: len(rt.sent) == 4)

    assert rt.types() == ["session.update"] + ["input_audio_buffer.append"] * 3
    assert [m["audio"] for m in rt.sent[1:]] == ["eDE=", "eDI=", "eDM="]

    ws.push(media_frame("eDQ="))
    await wait_for(lambda: len(rt.sent) == 5)
    assert rt.sent[-1]["audio"] == "eDQ="

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_settle_delay_defers_next_response():
    session, task, ws, connector = await start_session(make_settings(cancel_settle_ms=50))
    rt = connector.socket

    ws.push(start_frame("A1"))
    ws.push(media_frame("eDE="))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 1)
    rt.emit({"type": "input_audio_buffer.committed"})
    rt.emit({"type": "response.created", "response": {"id": "r1"}})
    rt.emit({"type": "response.audio.delta", "response_id": "r1", "delta": "ZDE="})
    await wait_for(lambda: session.state is TurnState.RESPONDING)

    ws.push(media_frame("eDI="))
    await wait_for(lambda: len(rt.sent_of("response.cancel")) == 1)
    rt.emit({"type": "input_audio_buffer.committed"})
    await asyncio.sleep(0.01)
    assert len(rt.sent_of("response.create")) == 1

    await wait_for(lambda: len(rt.sent_of("response.create")) == 2)
    assert session.state is TurnState.RESPONSE_PENDING

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_client_silence_commits_after_quiet_period():
    session, task, ws, connector = await start_session(
        make_settings(turn_detection="client_silence", client_silence_ms=30)
    )
    rt = connector.socket

    ws.push(start_frame("A1"))
    ws.push(media_frame("eDE="))
    await wait_for(lambda: len(rt.sent_of("response.create")) == 1)

    assert rt.sent[0]["session"]["turn_detection"] is None
    assert rt.types()[-2:] == ["input_audio_buffer.commit", "response.create"]

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_new_voiced_frame_rearms_turn_timer():
    session, task, ws, connector = await start_session(
        make_settings(turn_detection="client_silence", client_silence_ms=200)
    )
    rt = connector.socket

    ws.push(start_frame("A1"))
    ws.push(media_frame("eDE="))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 1)
    await asyncio.sleep(0.12)
    ws.push(media_frame("eDI="))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 2)

    # Past the first frame's deadline, before the second one's.
    await asyncio.sleep(0.12)
    assert rt.sent_of("input_audio_buffer.commit") == []

    await wait_for(lambda: len(rt.sent_of("response.create")) == 1)
    await asyncio.sleep(0.25)
    assert len(rt.sent_of("input_audio_buffer.commit")) == 1
    assert len(rt.sent_of("response.create")) == 1

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_hangup_cancels_pending_turn_timer():
    session, task, ws, connector = await start_session(
        make_settings(turn_detection="client_silence", client_silence_ms=100)
    )
    rt = connector.socket

    ws.push(start_frame("A1"))
    ws.push(media_frame("eDE="))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 1)

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)
    await asyncio.sleep(0.15)

    assert rt.sent_of("input_audio_buffer.commit") == []
    assert rt.sent_of("response.create") == []
    assert not [t for t in asyncio.all_tasks() if t.get_name().startswith("timer-") and not t.done()]


@pytest.mark.asyncio
async def test_caller_hangup_closes_endpoint():
    session, task, ws, connector = await start_session()
    ws.push(start_frame("A1"))
    await wait_for(lambda: connector.socket.sent != [])

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)

    assert connector.socket.closed is True
    assert session.closed is True
    assert session.close_reason == "telephony closed"


@pytest.mark.asyncio
async def test_endpoint_disconnect_closes_telephony():
    session, task, ws, connector = await start_session()
    ws.push(start_frame("A1"))
    await wait_for(lambda: connector.socket.sent != [])

    connector.socket.drop()
    await asyncio.wait_for(task, 1.0)

    assert ws.close_codes == [1000]
    assert session.close_reason == "endpoint closed"

    # No further events are processed after teardown.
    ws.push(media_frame("eDE="))
    await asyncio.sleep(0.01)
    assert connector.socket.sent_of("input_audio_buffer.append") == []


@pytest.mark.asyncio
async def test_endpoint_connect_failure_ends_session_after_one_retry():
    session, task, ws, connector = await start_session(connector=FakeConnector(failures=2))
    ws.push(start_frame("A1"))
    ws.push(media_frame("eDE="))

    await asyncio.wait_for(task, 1.0)

    assert len(connector.calls) == 2
    assert ws.close_codes == [1000]
    assert session.close_reason.startswith("endpoint closed")


@pytest.mark.asyncio
async def test_malformed_frames_do_not_end_the_session():
    session, task, ws, connector = await start_session()
    rt = connector.socket

    ws.push_raw("not json at all")
    ws.push(start_frame("A1"))
    ws.push_raw('{"event": "media", "media": 12}')
    ws.push(media_frame("eDE="))
    await wait_for(lambda: len(rt.sent_of("input_audio_buffer.append")) == 1)

    assert task.done() is False

    ws.hang_up()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_session_cannot_run_twice():
    session, task, ws, connector = await start_session()
    ws.hang_up()
    await asyncio.wait_for(task, 1.0)

    with pytest.raises(SessionClosedError):
        await session.run()


@pytest.mark.asyncio
async def test_local_close_tears_down_both_sides():
    session, task, ws, connector = await start_session()
    ws.push(start_frame("A1"))
    await wait_for(lambda: connector.socket.sent != [])

    session.close("shutdown")
    await asyncio.wait_for(task, 1.0)

    assert connector.socket.closed is True
    assert ws.close_codes == [1000]
    assert session.close_reason == "local closed: shutdown"
