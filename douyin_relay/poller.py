import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .douyin_api import PING_STATUS_LIVE, get_mode, split_rtmp_url
from .errors import AuthChallengeRequired, SessionError

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 3.0
LOG_EVERY = 10


class SessionState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    AUTH_PENDING = "auth_pending"
    READY = "ready"
    HEARTBEAT_ACTIVE = "heartbeat_active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Ready:
    rtmp_url: str
    room_id: str
    stream_id: str
    server: str
    key: str


@dataclass(frozen=True)
class AuthRequired:
    url: str


@dataclass(frozen=True)
class StatusChanged:
    code: Optional[int]


@dataclass(frozen=True)
class Error:
    detail: str


@dataclass
class RoomSession:
    room_id: str
    stream_id: str
    status: Optional[int]
    mode: str
    rtmp_url: Optional[str] = None

    @property
    def identified(self):
        return bool(self.room_id or self.stream_id)


class Heartbeat:
    """
    Calls `beat` every `interval` seconds on a daemon thread until cancelled.
    Failures are counted, not fatal; every LOG_EVERY-th one is reported.
    """

    def __init__(self, beat: Callable[[], object], interval=HEARTBEAT_INTERVAL, log_every=LOG_EVERY,
                 on_failure: Optional[Callable[[Exception], None]] = None, name="heartbeat"):
        self.beat = beat
        self.interval = interval
        self.log_every = max(1, int(log_every))
        self.on_failure = on_failure
        self.count = 0
        self.failures = 0
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def cancel(self):
        """Stops future ticks. Does not wait for a tick that is already in flight."""
        self._cancelled.set()

    @property
    def is_active(self):
        return self._thread.is_alive() and not self._cancelled.is_set()

    def _run(self):
        while not self._cancelled.wait(self.interval):
            self.count += 1
            try:
                self.beat()
            except Exception as e:
                if self._cancelled.is_set():
                    break
                self.failures += 1
                if self.failures % self.log_every == 1 or self.log_every == 1:
                    logger.warning("heartbeat failure #%d (tick %d): %s", self.failures, self.count, e)
                    if self.on_failure is not None:
                        self.on_failure(e)
            else:
                if self.count % self.log_every == 0:
                    logger.debug("heartbeat ok #%d", self.count)


class SessionPoller:
    """
    Drives one remote room session: single-shot polls decided by the caller,
    then a heartbeat once the room is live. Results come back as events,
    both returned from poll() and pushed to `events` / `on_event`.
    """

    def __init__(self, api, on_event: Optional[Callable[[object], None]] = None,
                 heartbeat_interval=HEARTBEAT_INTERVAL, log_every=LOG_EVERY):
        self.api = api
        self.on_event = on_event
        self.heartbeat_interval = heartbeat_interval
        self.log_every = log_every
        self.events = queue.Queue()
        self.state = SessionState.IDLE
        self.mode = None
        self.session: Optional[RoomSession] = None
        self._heartbeat: Optional[Heartbeat] = None
        self._lock = threading.Lock()
        # bumped by start()/stop(); results of calls issued under an older value are dropped
        self._generation = 0

    @property
    def heartbeat(self) -> Optional[Heartbeat]:
        return self._heartbeat

    def _emit(self, event):
        if event is None:
            return None
        self.events.put(event)
        if self.on_event is not None:
            self.on_event(event)
        return event

    def start(self, mode="phone"):
        """Begins a new session in `mode` and performs the first poll."""
        mode = get_mode(mode)
        with self._lock:
            old = self._heartbeat
            self._heartbeat = None
            self._generation += 1
            self.mode = mode
            self.session = None
            self.state = SessionState.POLLING
        if old is not None:
            old.cancel()
        logger.info("Session started in %s mode", mode.name)
        return self.poll()

    def poll(self):
        """One request to the latest-room endpoint. Returns the emitted event, or None if superseded."""
        with self._lock:
            if self.state in (SessionState.IDLE, SessionState.STOPPED):
                raise RuntimeError("poller is not started")
            generation = self._generation
            mode = self.mode
            previous = self.state

        try:
            room = self.api.get_latest_room(mode)
        except AuthChallengeRequired as e:
            with self._lock:
                if generation != self._generation:
                    return None
                self.state = SessionState.AUTH_PENDING
            logger.warning("Security verification required: %s", e.url)
            return self._emit(AuthRequired(url=e.url))
        except SessionError as e:
            with self._lock:
                if generation != self._generation:
                    return None
                self.state = previous
            logger.warning("Poll failed: %s", e)
            return self._emit(Error(detail=str(e)))

        with self._lock:
            if generation != self._generation:
                return None
            event = self._apply_room(mode, room, previous)
        return self._emit(event)

    def _apply_room(self, mode, room, previous):
        hb = self._heartbeat
        live = hb is not None and hb.is_active
        polled = RoomSession(
            room_id=room.room_id,
            stream_id=room.stream_id,
            status=room.status,
            mode=mode.name,
            rtmp_url=room.rtmp_push_url,
        )
        if not mode.is_ready(room.status):
            if live:
                # the running heartbeat still owns the live room; stop() ends that one
                self.session.status = room.status
                self.state = SessionState.HEARTBEAT_ACTIVE
            else:
                self.session = polled
                self.state = SessionState.POLLING
            logger.info("Room not live yet (status=%s)", room.status)
            return StatusChanged(code=room.status)

        parts = split_rtmp_url(room.rtmp_push_url)
        if parts is None or not (room.room_id and room.stream_id):
            if not live:
                self.session = polled
            self.state = previous
            return Error(detail=f"room reported ready (status={room.status}) without a usable push url or ids")

        server, key = parts
        self.session = polled
        self.state = SessionState.READY
        logger.info("Room %s is live, pushing to %s", room.room_id, server)
        self._start_heartbeat_locked(mode, room.room_id, room.stream_id)
        self.state = SessionState.HEARTBEAT_ACTIVE
        return Ready(rtmp_url=room.rtmp_push_url, room_id=room.room_id, stream_id=room.stream_id, server=server, key=key)

    def start_heartbeat(self, room_id, stream_id, mode=None):
        """Pings a room that is already live. stop() will end that room."""
        with self._lock:
            mode = get_mode(mode or self.mode or "phone")
            if self.mode is None:
                self.mode = mode
            self.session = RoomSession(
                room_id=room_id,
                stream_id=stream_id,
                status=PING_STATUS_LIVE,
                mode=mode.name,
            )
            self._start_heartbeat_locked(mode, room_id, stream_id)
            self.state = SessionState.HEARTBEAT_ACTIVE
            return self._heartbeat

    def _start_heartbeat_locked(self, mode, room_id, stream_id):
        def beat():
            self.api.ping_anchor(mode, room_id, stream_id)

        def failed(exc):
            self._emit(Error(detail=f"heartbeat: {exc}"))

        old = self._heartbeat
        if old is not None:
            old.cancel()
        self._heartbeat = Heartbeat(
            beat,
            interval=self.heartbeat_interval,
            log_every=self.log_every,
            on_failure=failed,
            name=f"heartbeat-{room_id}",
        ).start()
        logger.info("Heartbeat started room=%s stream=%s mode=%s", room_id, stream_id, mode.name)

    def stop_heartbeat(self):
        with self._lock:
            hb = self._heartbeat
            self._heartbeat = None
        if hb is None:
            return False
        hb.cancel()
        logger.info("Heartbeat stopped")
        return True

    def stop(self):
        """
        Tells the service the room ended (if we know which room), then
        cancels the heartbeat. Calling it again does nothing.
        """
        with self._lock:
            if self.state in (SessionState.IDLE, SessionState.STOPPED):
                return False
            self.state = SessionState.STOPPED
            self._generation += 1
            session, self.session = self.session, None
            hb, self._heartbeat = self._heartbeat, None

        try:
            if session is not None and session.identified:
                try:
                    self.api.end_room(session.mode, session.room_id, session.stream_id)
                    logger.info("Sent end for room %s", session.room_id)
                except SessionError as e:
                    logger.warning("End request failed: %s", e)
                    self._emit(Error(detail=f"end: {e}"))
        finally:
            if hb is not None:
                hb.cancel()
        logger.info("Session stopped")
        return True
