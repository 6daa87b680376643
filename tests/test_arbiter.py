import asyncio
import time
from unittest.mock import AsyncMock, Mock

import pytest

from app import arbiter as arbiter_module
from app.arbiter import ArbiterState, ScanSession, ScanSessionRegistry
from app.decoding import DecodeError
from app.records import BookIdentity, Channel, ScanMode, ScanPayload
from tests.conftest import VALID_ISBN13

IDLE_TIMEOUT = 0.02
COOLDOWN = 0.05


def make_session(mode=ScanMode.EITHER, **kwargs):
    on_accept = kwargs.pop("on_accept", Mock())
    on_reject = kwargs.pop("on_reject", Mock())
    session = ScanSession(
        mode,
        on_accept=on_accept,
        on_reject=on_reject,
        idle_timeout=IDLE_TIMEOUT,
        cooldown=COOLDOWN,
        frame_interval=0.001,
        min_length=3,
        timeout_flush_length=8,
        **kwargs,
    )
    return session, on_accept, on_reject


async def type_keys(session, text):
    for ch in text:
        await session.on_key(ch)


@pytest.mark.asyncio
async def test_enter_flushes_keyboard_buffer():
    session, on_accept, _ = make_session()
    await type_keys(session, VALID_ISBN13)
    assert session.state == ArbiterState.BUFFERING_KEYBOARD

    outcome = await session.on_key("Enter")

    assert outcome.status == "accepted"
    assert outcome.channel == Channel.KEYBOARD_WEDGE
    assert isinstance(outcome.record, BookIdentity)
    on_accept.assert_called_once()
    assert len(session.buffer) == 0


@pytest.mark.asyncio
async def test_camera_and_keyboard_in_same_tick_classify_exactly_one():
    session, on_accept, on_reject = make_session()
    await type_keys(session, "LIB-000123")

    keyboard, camera = await asyncio.gather(
        session.on_key("Enter"),
        session.submit_camera(VALID_ISBN13),
    )

    statuses = sorted([keyboard.status, camera.status])
    assert statuses == ["accepted", "ignored"]
    assert on_accept.call_count == 1
    on_reject.assert_not_called()


@pytest.mark.asyncio
async def test_book_in_student_mode_rejected_without_handoff():
    session, on_accept, on_reject = make_session(ScanMode.STUDENT)

    outcome = await session.submit_manual(VALID_ISBN13)

    assert outcome.status == "rejected"
    assert outcome.reason == "book code scanned, expected student"
    on_accept.assert_not_called()
    on_reject.assert_called_once()
    assert session.state == ArbiterState.PROCESSING

    await asyncio.sleep(COOLDOWN * 3)
    assert session.state == ArbiterState.IDLE


@pytest.mark.asyncio
async def test_short_buffer_timeout_emits_nothing():
    session, on_accept, on_reject = make_session()
    await type_keys(session, "abc")

    await asyncio.sleep(IDLE_TIMEOUT * 5)

    assert len(session.buffer) == 0
    assert session.state == ArbiterState.IDLE
    assert session.last_outcome is None
    on_accept.assert_not_called()
    on_reject.assert_not_called()


@pytest.mark.asyncio
async def test_long_burst_without_enter_flushed_on_timeout():
    session, on_accept, _ = make_session()
    await type_keys(session, VALID_ISBN13)

    await asyncio.sleep(IDLE_TIMEOUT * 5)

    on_accept.assert_called_once()
    record = on_accept.call_args.args[0]
    assert isinstance(record, BookIdentity)
    assert record.isbn == VALID_ISBN13


@pytest.mark.asyncio
async def test_enter_with_short_buffer_is_ignored():
    session, on_accept, _ = make_session()
    await type_keys(session, "ab")

    outcome = await session.on_key("Enter")

    assert outcome.status == "ignored"
    on_accept.assert_not_called()


@pytest.mark.asyncio
async def test_keys_in_text_input_are_not_captured():
    session, _, _ = make_session()
    outcome = await session.on_key("9", in_text_input=True)
    assert outcome.status == "ignored"
    assert len(session.buffer) == 0


@pytest.mark.asyncio
async def test_keys_ignored_while_processing():
    session, _, _ = make_session()
    await session.submit_manual(VALID_ISBN13)

    outcome = await session.on_key("1")

    assert outcome.status == "ignored"
    assert len(session.buffer) == 0


@pytest.mark.asyncio
async def test_non_printable_keys_skipped():
    session, _, _ = make_session()
    outcome = await session.on_key("Shift")
    assert outcome.status == "ignored"
    assert len(session.buffer) == 0


@pytest.mark.asyncio
async def test_session_accepts_again_after_cooldown():
    session, on_accept, _ = make_session()
    first = await session.submit_manual(VALID_ISBN13)
    during = await session.submit_manual(VALID_ISBN13)
    await asyncio.sleep(COOLDOWN * 3)
    after = await session.submit_manual("LIB-000123")

    assert (first.status, during.status, after.status) == ("accepted", "ignored", "accepted")
    assert on_accept.call_count == 2


@pytest.mark.asyncio
async def test_empty_manual_input_reported():
    session, on_accept, _ = make_session()
    outcome = await session.submit_manual("   ")
    assert outcome.status == "rejected"
    assert outcome.title == "No Input"
    assert session.state == ArbiterState.IDLE
    on_accept.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_code_retagged_in_book_mode():
    session, on_accept, _ = make_session(ScanMode.BOOK)
    outcome = await session.submit_manual("LIB-000123")
    assert outcome.status == "accepted"
    assert outcome.record.assumed_class.value == "book"


@pytest.mark.asyncio
async def test_async_handoff_awaited():
    handoff = AsyncMock()
    session, _, _ = make_session(on_accept=handoff)
    await session.submit_manual(VALID_ISBN13)
    handoff.assert_awaited_once()


@pytest.mark.asyncio
async def test_failing_handoff_reported_and_released():
    session, _, _ = make_session(on_accept=Mock(side_effect=RuntimeError("db down")))
    outcome = await session.submit_manual(VALID_ISBN13)
    assert outcome.status == "rejected"
    assert outcome.title == "Processing Error"
    await asyncio.sleep(COOLDOWN * 3)
    assert session.state == ArbiterState.IDLE


@pytest.mark.asyncio
async def test_camera_loop_commits_once_per_scan():
    frames = iter([None, None, VALID_ISBN13, VALID_ISBN13, VALID_ISBN13])

    async def frame_source():
        return next(frames, None)

    session, on_accept, _ = make_session()
    assert session.start_camera(frame_source)
    assert session.state == ArbiterState.CAMERA_ACTIVE

    await asyncio.sleep(0.03)

    on_accept.assert_called_once()
    session.close()


@pytest.mark.asyncio
async def test_camera_loop_swallows_decode_misses():
    calls = 0

    async def frame_source():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ValueError("NotFoundException")
        return VALID_ISBN13 if calls == 3 else None

    session, on_accept, _ = make_session()
    session.start_camera(frame_source)
    await asyncio.sleep(0.03)

    on_accept.assert_called_once()
    assert session.camera_running
    session.close()


@pytest.mark.asyncio
async def test_close_stops_camera_and_clears_buffer():
    source = Mock()
    source.close = Mock()

    async def frame_source():
        return None

    frame_source.close = source.close
    session, on_accept, _ = make_session()
    session.start_camera(frame_source)
    await type_keys(session, "12345")
    await asyncio.sleep(0)

    session.close()
    await asyncio.sleep(0.01)

    assert session.state == ArbiterState.CLOSED
    assert not session.camera_running
    assert len(session.buffer) == 0
    source.close.assert_called_once()
    assert (await session.submit_manual(VALID_ISBN13)).status == "ignored"
    assert (await session.on_key("1")).status == "ignored"
    on_accept.assert_not_called()


@pytest.mark.asyncio
async def test_close_during_handoff_delivers_nothing_further():
    session = None
    on_reject = Mock()

    async def slow_handoff(record):
        session.close()

    session, _, _ = make_session(on_accept=slow_handoff, on_reject=on_reject)
    outcome = await session.submit_manual(VALID_ISBN13)

    assert outcome.status == "cancelled"
    assert session.last_outcome is None
    on_reject.assert_not_called()


@pytest.mark.asyncio
async def test_close_during_image_decode_cancels(monkeypatch):
    def slow_decode(data):
        time.sleep(0.05)
        return VALID_ISBN13, "EAN13"

    monkeypatch.setattr(arbiter_module, "decode_from_image", slow_decode)
    session, on_accept, on_reject = make_session()

    task = asyncio.ensure_future(session.submit_image(b"png"))
    await asyncio.sleep(0.01)
    session.close()
    outcome = await task

    assert outcome.status == "cancelled"
    on_accept.assert_not_called()
    on_reject.assert_not_called()


@pytest.mark.asyncio
async def test_image_decode_failure_surfaced_once(monkeypatch):
    def no_code(data):
        raise DecodeError("Could not read barcode from image.")

    monkeypatch.setattr(arbiter_module, "decode_from_image", no_code)
    session, on_accept, _ = make_session()

    outcome = await session.submit_image(b"png")

    assert outcome.status == "rejected"
    assert outcome.reason == "could not read barcode"
    assert outcome.channel == Channel.FILE_DECODE
    on_accept.assert_not_called()
    await asyncio.sleep(COOLDOWN * 3)
    assert session.state == ArbiterState.IDLE


@pytest.mark.asyncio
async def test_image_decode_success(monkeypatch):
    monkeypatch.setattr(arbiter_module, "decode_from_image", lambda data: (VALID_ISBN13, "EAN13"))
    session, on_accept, _ = make_session(ScanMode.BOOK)

    outcome = await session.submit_image(b"png")

    assert outcome.status == "accepted"
    assert outcome.channel == Channel.FILE_DECODE
    on_accept.assert_called_once()


@pytest.mark.asyncio
async def test_direct_payload_submit_and_snapshot():
    session, _, _ = make_session()
    outcome = await session.submit(ScanPayload(text=VALID_ISBN13, channel=Channel.CAMERA))
    snap = session.snapshot()
    assert outcome.status == "accepted"
    assert snap["state"] == "processing"
    assert snap["last_outcome"]["record"]["isbn"] == VALID_ISBN13


@pytest.mark.asyncio
async def test_registry_open_get_close():
    registry = ScanSessionRegistry()
    session = registry.open(ScanMode.STUDENT)
    assert registry.get(session.id) is session
    assert registry.health()["open_sessions"] == 1

    assert registry.close(session.id)
    assert session.state == ArbiterState.CLOSED
    assert registry.get(session.id) is None
    assert not registry.close(session.id)


def strokes(text, start=0.0, step=5.0):
    return [(ch, start + i * step) for i, ch in enumerate(text)]


@pytest.mark.asyncio
async def test_burst_replayed_in_keystroke_order():
    session, on_accept, _ = make_session()
    outcome = await session.on_key_burst(strokes("LIB-000123") + [("Enter", 60.0)])
    assert outcome.status == "accepted"
    assert outcome.record.raw_text == "LIB-000123"
    on_accept.assert_called_once()


@pytest.mark.asyncio
async def test_burst_gap_expires_earlier_keys():
    session, on_accept, _ = make_session()
    keys = strokes("abc") + strokes(VALID_ISBN13, start=500.0) + [("Enter", 600.0)]

    outcome = await session.on_key_burst(keys)

    assert outcome.status == "accepted"
    assert outcome.record.isbn == VALID_ISBN13
    on_accept.assert_called_once()


@pytest.mark.asyncio
async def test_burst_gap_flushes_long_burst_without_enter():
    session, on_accept, _ = make_session()
    keys = strokes(VALID_ISBN13) + strokes("LIB-000123", start=900.0) + [("Enter", 1000.0)]

    outcome = await session.on_key_burst(keys)

    assert outcome.status == "accepted"
    assert outcome.record.isbn == VALID_ISBN13
    assert on_accept.call_count == 1
    assert len(session.buffer) == 0


@pytest.mark.asyncio
async def test_burst_ended_idle():
    session, on_accept, _ = make_session()
    assert (await session.on_key_burst(strokes("LIB-000123"), ended_idle=True)).status == "accepted"

    short, _, _ = make_session()
    outcome = await short.on_key_burst(strokes("abc"), ended_idle=True)
    assert outcome.status == "ignored"
    assert len(short.buffer) == 0


@pytest.mark.asyncio
async def test_burst_from_text_input_ignored():
    session, on_accept, _ = make_session()
    outcome = await session.on_key_burst(strokes("LIB-000123") + [("Enter", 99.0)], in_text_input=True)
    assert outcome.status == "ignored"
    on_accept.assert_not_called()


def test_registry_reaps_idle_sessions():
    registry = ScanSessionRegistry(idle_ttl=60)
    stale = registry.open(ScanMode.BOOK)
    fresh = registry.open(ScanMode.STUDENT)
    stale.last_active -= 120

    assert registry.reap_idle() == 1
    assert stale.state == ArbiterState.CLOSED
    assert registry.get(stale.id) is None
    assert registry.get(fresh.id) is fresh


def test_registry_get_counts_as_activity():
    registry = ScanSessionRegistry(idle_ttl=60)
    session = registry.open()
    session.last_active -= 120
    assert registry.get(session.id) is session
    assert registry.reap_idle() == 0


def test_registry_open_reaps_abandoned_sessions():
    registry = ScanSessionRegistry(idle_ttl=60)
    abandoned = registry.open()
    abandoned.last_active -= 120
    registry.open()
    assert len(registry) == 1
    assert not abandoned.is_open


def test_registry_without_ttl_keeps_sessions():
    registry = ScanSessionRegistry(idle_ttl=0)
    session = registry.open()
    session.last_active -= 10_000
    assert registry.reap_idle() == 0
    assert len(registry) == 1
