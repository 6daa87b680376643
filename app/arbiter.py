import asyncio
import inspect
import logging
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Sequence, Set, Tuple

from pydantic import BaseModel

from app.decoding import DecodeError, decode_from_image
from app.detector import classify_payload
from app.guard import Accepted, guard
from app.records import Channel, ClassifiedRecord, ScanMode, ScanPayload
from app.settings import settings

logger = logging.getLogger(__name__)

FrameSource = Callable[[], Awaitable[Optional[str]]]


class ArbiterState(str, Enum):
    IDLE = "idle"
    CAMERA_ACTIVE = "camera_active"
    BUFFERING_KEYBOARD = "buffering_keyboard"
    PROCESSING = "processing"
    CLOSED = "closed"


class ScanOutcome(BaseModel):
    status: Literal["accepted", "rejected", "ignored", "pending", "cancelled"]
    channel: Optional[Channel] = None
    record: Optional[ClassifiedRecord] = None
    reason: str = ""
    title: str = ""
    message: str = ""


class KeyboardBuffer:
    """
    Keystrokes from a keyboard-wedge scanner, with a sliding idle timer.
    Every append re-arms the timer; on_idle fires once the burst stops.
    """

    def __init__(self, idle_timeout: float, on_idle: Callable[[], None]):
        self.idle_timeout = idle_timeout
        self._on_idle = on_idle
        self._chars = []
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def text(self) -> str:
        return "".join(self._chars)

    def __len__(self) -> int:
        return len(self._chars)

    def append(self, ch: str):
        self._chars.append(ch)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.idle_timeout, self._expire)

    def _expire(self):
        self._timer = None
        self._on_idle()

    def take(self) -> str:
        text = self.text
        self.clear()
        return text

    def clear(self):
        self._chars = []
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class ScanSession:
    """
    Channel arbiter for one open scan dialog.

    Camera frames, keyboard-wedge bursts, manual entry and image uploads all
    funnel through submit(). The idle->processing check-and-set in _try_begin
    has no await in it, so exactly one payload wins per physical scan and every
    other source is ignored until the cool-down releases the session.
    """

    def __init__(
        self,
        mode: ScanMode = ScanMode.EITHER,
        on_accept: Optional[Callable[[Any], Any]] = None,
        on_reject: Optional[Callable[[ScanOutcome], Any]] = None,
        *,
        session_id: Optional[str] = None,
        idle_timeout: Optional[float] = None,
        min_length: Optional[int] = None,
        timeout_flush_length: Optional[int] = None,
        cooldown: Optional[float] = None,
        frame_interval: Optional[float] = None,
    ):
        self.id = session_id or uuid.uuid4().hex
        self.mode = ScanMode(mode)
        self._on_accept = on_accept
        self._on_reject = on_reject
        self.min_length = settings.keyboard_min_length if min_length is None else min_length
        self.timeout_flush_length = (
            settings.keyboard_timeout_flush_length if timeout_flush_length is None else timeout_flush_length
        )
        self.cooldown = settings.scan_cooldown_ms / 1000 if cooldown is None else cooldown
        self.frame_interval = settings.camera_frame_interval_ms / 1000 if frame_interval is None else frame_interval
        self.buffer = KeyboardBuffer(
            settings.keyboard_idle_timeout_ms / 1000 if idle_timeout is None else idle_timeout,
            self._on_keyboard_idle,
        )
        self.last_outcome: Optional[ScanOutcome] = None
        self._open = True
        self._processing = False
        self._release_handle: Optional[asyncio.TimerHandle] = None
        self._camera_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self.last_active = time.monotonic()

    def touch(self):
        self.last_active = time.monotonic()

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def state(self) -> ArbiterState:
        if not self._open:
            return ArbiterState.CLOSED
        if self._processing:
            return ArbiterState.PROCESSING
        if len(self.buffer):
            return ArbiterState.BUFFERING_KEYBOARD
        if self.camera_running:
            return ArbiterState.CAMERA_ACTIVE
        return ArbiterState.IDLE

    @property
    def camera_running(self) -> bool:
        return self._camera_task is not None and not self._camera_task.done()

    def _try_begin(self) -> bool:
        if not self._open or self._processing:
            return False
        self._processing = True
        return True

    def _release_later(self):
        if self._release_handle is not None:
            self._release_handle.cancel()
        self._release_handle = asyncio.get_running_loop().call_later(self.cooldown, self._release)

    def _release(self):
        self._release_handle = None
        if self._open:
            self._processing = False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _ignored(self, channel: Channel) -> ScanOutcome:
        message = "Scanner closed" if not self._open else "Scan already in progress"
        return ScanOutcome(status="ignored", channel=channel, message=message)

    def _cancelled(self, channel: Channel) -> ScanOutcome:
        return ScanOutcome(status="cancelled", channel=channel, message="Scanner closed")

    async def submit(self, payload: ScanPayload) -> ScanOutcome:
        """Offer a payload from any channel; it is processed only if the session is idle."""
        if not self._try_begin():
            logger.debug(f"[{self.id[:8]}] {payload.channel.value} payload ignored ({self.state.value})")
            return self._ignored(payload.channel)
        return await self._process(payload)

    async def _process(self, payload: ScanPayload) -> ScanOutcome:
        channel = payload.channel
        try:
            record = classify_payload(payload.text)
            result = guard(record, self.mode)
        except Exception as e:
            logger.error(f"[{self.id[:8]}] Failed to classify scan: {e}", exc_info=True)
            outcome = ScanOutcome(
                status="rejected",
                channel=channel,
                reason="processing error",
                title="Processing Error",
                message="Failed to process scanned data.",
            )
        else:
            if isinstance(result, Accepted):
                outcome = ScanOutcome(status="accepted", channel=channel, record=result.record, message=result.message)
            else:
                outcome = ScanOutcome(
                    status="rejected",
                    channel=channel,
                    reason=result.reason,
                    title=result.title,
                    message=result.message,
                )

        if not self._open:
            return self._cancelled(channel)

        try:
            if outcome.status == "accepted":
                logger.info(f"[{self.id[:8]}] Accepted {outcome.record.kind} from {channel.value}")
                await self._call(self._on_accept, outcome.record)
            else:
                await self._call(self._on_reject, outcome)
        except Exception as e:
            logger.error(f"[{self.id[:8]}] Scan handoff failed: {e}", exc_info=True)
            outcome = ScanOutcome(
                status="rejected",
                channel=channel,
                reason="processing error",
                title="Processing Error",
                message="Failed to process scanned data.",
            )

        if not self._open:
            return self._cancelled(channel)
        self.last_outcome = outcome
        self._release_later()
        return outcome

    async def _call(self, callback, arg):
        if callback is None:
            return
        ret = callback(arg)
        if inspect.isawaitable(ret):
            await ret

    # keyboard-wedge channel

    async def on_key(self, key: str, in_text_input: bool = False) -> ScanOutcome:
        """
        Feed one keydown from the dialog-scoped listener.

        Keys typed into a focused text input belong to that input and are
        never captured here.
        """
        channel = Channel.KEYBOARD_WEDGE
        if not self._open or self._processing or in_text_input:
            return self._ignored(channel)

        if key == "Enter":
            text = self.buffer.text.strip()
            if len(text) > self.min_length:
                self.buffer.clear()
                logger.info(f"[{self.id[:8]}] Barcode reader input detected: {text[:30]}")
                return await self.submit(ScanPayload(text=text, channel=channel))
            return ScanOutcome(status="ignored", channel=channel, message="Input too short for a barcode")

        if len(key) != 1:
            return ScanOutcome(status="ignored", channel=channel)
        self.buffer.append(key)
        return ScanOutcome(status="pending", channel=channel, message=f"Reading: {len(self.buffer)} chars")

    def _take_expired_buffer(self) -> Optional[str]:
        text = self.buffer.take().strip()
        if not self._open or not text:
            return None
        if len(text) >= self.timeout_flush_length and not self._processing:
            logger.info(f"[{self.id[:8]}] Keyboard burst without Enter flushed: {text[:30]}")
            return text
        logger.debug(f"[{self.id[:8]}] Keyboard buffer expired ({len(text)} chars), discarded")
        return None

    def _on_keyboard_idle(self):
        text = self._take_expired_buffer()
        if text:
            self._spawn(self.submit(ScanPayload(text=text, channel=Channel.KEYBOARD_WEDGE)))

    async def on_key_burst(
        self, strokes: Sequence[Tuple[str, float]], ended_idle: bool = False, in_text_input: bool = False
    ) -> ScanOutcome:
        """
        Replay a burst captured in the browser, in keystroke order.

        strokes are (key, at_ms) pairs stamped where the keys were pressed, so
        idle gaps are measured between keystrokes rather than between
        requests. ended_idle means the page saw the burst go quiet without an
        Enter, and the buffer is expired right away.
        """
        channel = Channel.KEYBOARD_WEDGE
        if not self._open or self._processing or in_text_input:
            return self._ignored(channel)

        idle_ms = self.buffer.idle_timeout * 1000
        outcome = ScanOutcome(status="ignored", channel=channel)
        decided = None
        previous = None
        for key, at_ms in strokes:
            if previous is not None and len(self.buffer) and at_ms - previous > idle_ms:
                text = self._take_expired_buffer()
                if text:
                    decided = decided or await self.submit(ScanPayload(text=text, channel=channel))
            previous = at_ms
            outcome = await self.on_key(key)
            if outcome.status not in ("ignored", "pending"):
                decided = decided or outcome

        if ended_idle and len(self.buffer):
            text = self._take_expired_buffer()
            if text:
                decided = decided or await self.submit(ScanPayload(text=text, channel=channel))
            else:
                outcome = ScanOutcome(status="ignored", channel=channel, message="Input too short for a barcode")
        return decided or outcome

    # camera channel

    async def submit_camera(self, text: str) -> ScanOutcome:
        """A frame decoded elsewhere (e.g. by the browser) produced text."""
        text = (text or "").strip()
        if not text:
            return ScanOutcome(status="ignored", channel=Channel.CAMERA)
        return await self.submit(ScanPayload(text=text, channel=Channel.CAMERA))

    def start_camera(self, frame_source: FrameSource) -> bool:
        if not self._open:
            return False
        if self.camera_running:
            return True
        self._camera_task = asyncio.get_running_loop().create_task(self._camera_loop(frame_source))
        return True

    async def _camera_loop(self, frame_source: FrameSource):
        logger.info(f"[{self.id[:8]}] Camera loop started")
        try:
            while self._open:
                try:
                    text = await frame_source()
                except Exception as e:
                    # most frames contain no code
                    logger.debug(f"[{self.id[:8]}] Frame decode miss: {e}")
                    text = None
                if not self._open:
                    break
                if text and text.strip() and not self._processing:
                    self._spawn(self.submit(ScanPayload(text=text.strip(), channel=Channel.CAMERA)))
                await asyncio.sleep(self.frame_interval)
        finally:
            close = getattr(frame_source, "close", None)
            if callable(close):
                close()
            logger.info(f"[{self.id[:8]}] Camera loop stopped")

    def stop_camera(self):
        if self._camera_task is not None:
            self._camera_task.cancel()
            self._camera_task = None

    # manual and file channels

    async def submit_manual(self, text: str) -> ScanOutcome:
        text = (text or "").strip()
        if not text:
            return ScanOutcome(
                status="rejected",
                channel=Channel.MANUAL,
                reason="empty input",
                title="No Input",
                message="Please enter barcode data.",
            )
        return await self.submit(ScanPayload(text=text, channel=Channel.MANUAL))

    async def submit_image(self, data: bytes) -> ScanOutcome:
        """Single-shot image upload; a failed decode is reported to the operator once."""
        channel = Channel.FILE_DECODE
        if not self._try_begin():
            return self._ignored(channel)
        try:
            text, symbology = await asyncio.to_thread(decode_from_image, data)
        except Exception as e:
            if not self._open:
                return self._cancelled(channel)
            self._release_later()
            if isinstance(e, DecodeError):
                title, message = "File Scan Failed", str(e)
            else:
                logger.error(f"[{self.id[:8]}] Image decode error: {e}", exc_info=True)
                title, message = "File Processing Error", "Failed to process the image file."
            outcome = ScanOutcome(
                status="rejected",
                channel=channel,
                reason="could not read barcode",
                title=title,
                message=message,
            )
            self.last_outcome = outcome
            return outcome
        if not self._open:
            return self._cancelled(channel)
        logger.info(f"[{self.id[:8]}] Decoded {symbology} from uploaded image")
        return await self._process(ScanPayload(text=text, channel=channel))

    def close(self):
        """Tear down every source; nothing is delivered after this returns."""
        if not self._open:
            return
        self._open = False
        self.buffer.clear()
        self.stop_camera()
        if self._release_handle is not None:
            self._release_handle.cancel()
            self._release_handle = None
        for task in list(self._tasks):
            task.cancel()
        self._processing = False
        logger.info(f"[{self.id[:8]}] Scan session closed")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "mode": self.mode.value,
            "state": self.state.value,
            "buffered_chars": len(self.buffer),
            "camera_running": self.camera_running,
            "last_outcome": self.last_outcome.model_dump(mode="json") if self.last_outcome else None,
        }


class ScanSessionRegistry:
    """
    Open scan dialogs by id. One per application.

    A dialog whose page went away without closing it (crashed tab, dropped
    network, API client that never calls DELETE) is reaped once it has seen
    no request for idle_ttl seconds.
    """

    def __init__(self, idle_ttl: Optional[float] = None):
        self._sessions: Dict[str, ScanSession] = {}
        self.idle_ttl = settings.scan_session_idle_timeout_s if idle_ttl is None else idle_ttl

    def open(self, mode: ScanMode = ScanMode.EITHER, **kwargs) -> ScanSession:
        self.reap_idle()
        session = ScanSession(mode, **kwargs)
        self._sessions[session.id] = session
        logger.info(f"Scan session {session.id[:8]} opened in {session.mode.value} mode")
        return session

    def get(self, session_id: str) -> Optional[ScanSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def reap_idle(self, now: Optional[float] = None) -> int:
        """Close every session idle for longer than idle_ttl; returns how many."""
        if self.idle_ttl <= 0:
            return 0
        now = time.monotonic() if now is None else now
        stale = [sid for sid, s in self._sessions.items() if now - s.last_active > self.idle_ttl]
        for session_id in stale:
            logger.info(f"Scan session {session_id[:8]} idle for over {self.idle_ttl:.0f}s, closing")
            self.close(session_id)
        return len(stale)

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self):
        for session_id in list(self._sessions):
            self.close(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def health(self) -> Dict[str, Any]:
        states: Dict[str, int] = {}
        for s in self._sessions.values():
            states[s.state.value] = states.get(s.state.value, 0) + 1
        return {"ok": True, "open_sessions": len(self._sessions), "states": states}


_registry_instance: Optional[ScanSessionRegistry] = None


def get_registry() -> ScanSessionRegistry:
    """Get or create the application's session registry."""
    global _registry_instance
    if _registry_instance is None:
        _registry_instance = ScanSessionRegistry()
    return _registry_instance
