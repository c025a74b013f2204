"""Playback session state machine.

A session is one attempt to play one catalog entry. The controller drives an
external playback engine through connect, verify, a single rerouted retry and
a terminal dead state. Every engine or timer signal is bound to the session
it was registered for and is dropped once that session has been torn down.

Engine contract (duck typed)::

    engine.attach(address, *, on_progress, on_error, request_hook=None)
    engine.detach()
    engine.recover_media_error() -> bool      # optional

Scheduler contract: ``schedule(seconds, callback)`` returns a handle with
``cancel()``.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from catalog import KnownGoodSet
from playlist import CatalogEntry
from routing import RoutePolicy, force_relay, select_route

LOG = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 15.0
DEFAULT_MEDIA_RECOVERY_LIMIT = 3


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    VERIFIED = "verified"
    RECOVERING = "recovering"
    DEAD = "dead"


class ErrorKind(str, enum.Enum):
    NETWORK = "network"
    MEDIA = "media"
    OTHER = "other"


class DeadReason(str, enum.Enum):
    OFFLINE = "offline"
    SIGNAL_LOST = "signal_lost"

    @property
    def label(self) -> str:
        if self is DeadReason.OFFLINE:
            return "Stream offline or geo-blocked"
        return "Signal lost"


@dataclass(frozen=True)
class EngineError:
    kind: ErrorKind
    fatal: bool = True
    detail: str = ""
    status: Optional[int] = None


@dataclass
class PlaybackSession:
    entry: CatalogEntry
    state: SessionState = SessionState.CONNECTING
    attempt: int = 0
    deadline: Optional[float] = None
    routed: bool = False
    media_recoveries: int = 0
    failure: Optional[str] = None
    dead_reason: Optional[DeadReason] = None
    detail: str = ""
    live: bool = True
    engine: Any = field(default=None, repr=False)
    timer: Any = field(default=None, repr=False)


class SessionController:
    def __init__(
        self,
        engine_factory: Callable[[], Any],
        scheduler: Callable[[float, Callable[[], None]], Any],
        known_good: Optional[KnownGoodSet] = None,
        *,
        route_policy: Optional[RoutePolicy] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        media_recovery_limit: int = DEFAULT_MEDIA_RECOVERY_LIMIT,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[PlaybackSession], None]] = None,
    ) -> None:
        self._engine_factory = engine_factory
        self._schedule = scheduler
        self.known_good = known_good if known_good is not None else KnownGoodSet()
        self.route_policy = route_policy or RoutePolicy()
        self.connect_timeout = float(connect_timeout)
        self.media_recovery_limit = max(0, int(media_recovery_limit))
        self._clock = clock
        self._on_change = on_change
        self._session: Optional[PlaybackSession] = None

    @property
    def session(self) -> Optional[PlaybackSession]:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.IDLE

    # --- user actions ---

    def select(self, entry: CatalogEntry) -> PlaybackSession:
        self._discard_current()
        session = PlaybackSession(entry=entry)
        self._session = session
        LOG.info("Selected channel %s (%s)", entry.name, entry.address)
        self._start_attempt(session, reroute=False)
        return session

    def retry(self) -> Optional[PlaybackSession]:
        if self._session is None:
            return None
        LOG.info("Manual retry for %s", self._session.entry.name)
        return self.select(self._session.entry)

    def discard(self) -> None:
        self._discard_current()
        self._notify(None)

    # --- attempts ---

    def _start_attempt(self, session: PlaybackSession, reroute: bool) -> None:
        session.attempt += 1
        session.state = SessionState.RECOVERING if reroute else SessionState.CONNECTING
        if reroute:
            session.routed = True
            url = force_relay(session.entry.address, self.route_policy)
        else:
            route = select_route(
                session.entry.address,
                self.route_policy.page_is_secure,
                session.routed,
                self.route_policy,
            )
            session.routed = route.via_relay
            url = route.url

        self._arm_deadline(session)
        LOG.info("Attempt %d for %s via %s", session.attempt, session.entry.name,
                 "relay" if session.routed else "direct")
        self._notify(session)
        attempt = session.attempt
        try:
            engine = self._engine_factory()
            session.engine = engine
            engine.attach(
                url,
                on_progress=lambda: self._on_progress(session, attempt),
                on_error=lambda error: self._on_error(session, attempt, error),
                request_hook=lambda address: self._route_request(session, attempt, address),
            )
        except Exception as err:
            LOG.error("Engine attach failed for %s: %s", session.entry.name, err)
            self._die(session, DeadReason.SIGNAL_LOST, "other_fatal", f"Player failed to start: {err}")

    def _arm_deadline(self, session: PlaybackSession) -> None:
        self._cancel_timer(session)
        session.deadline = self._clock() + self.connect_timeout
        attempt = session.attempt
        session.timer = self._schedule(self.connect_timeout, lambda: self._on_deadline(session, attempt))

    # --- signals ---

    def _is_live(self, session: PlaybackSession, attempt: Optional[int] = None) -> bool:
        # signals from a detached attempt of the current session are stale too
        if attempt is not None and attempt != session.attempt:
            return False
        return session.live and session is self._session

    def _route_request(self, session: PlaybackSession, attempt: int, address: str) -> str:
        if not self._is_live(session, attempt):
            return address
        route = select_route(address, self.route_policy.page_is_secure, session.routed, self.route_policy)
        if route.via_relay and not session.routed:
            session.routed = True
        return route.url

    def _on_progress(self, session: PlaybackSession, attempt: int) -> None:
        if not self._is_live(session, attempt):
            LOG.debug("Ignoring progress from stale session %s", session.entry.id)
            return
        if session.state not in (SessionState.CONNECTING, SessionState.RECOVERING):
            return
        self._cancel_timer(session)
        session.deadline = None
        session.state = SessionState.VERIFIED
        LOG.info("Playback verified for %s (attempt %d)", session.entry.name, session.attempt)
        self.known_good.add(session.entry.id)
        self._notify(session)

    def _on_error(self, session: PlaybackSession, attempt: int, error: EngineError) -> None:
        if not self._is_live(session, attempt):
            LOG.debug("Ignoring error from stale session %s: %s", session.entry.id, error)
            return
        if session.state in (SessionState.IDLE, SessionState.DEAD):
            return
        if not error.fatal:
            LOG.debug("Non-fatal %s error on %s: %s", error.kind.value, session.entry.name, error.detail)
            return

        LOG.warning("Fatal %s error on %s (attempt %d, routed=%s): %s",
                    error.kind.value, session.entry.name, session.attempt, session.routed, error.detail)
        if error.kind is ErrorKind.NETWORK:
            if session.routed:
                self._die(session, DeadReason.OFFLINE, "network_error", error.detail)
                return
            self._detach(session)
            self._start_attempt(session, reroute=True)
        elif error.kind is ErrorKind.MEDIA:
            if not self._recover_media(session):
                self._die(session, DeadReason.SIGNAL_LOST, "media_error", error.detail)
        else:
            self._die(session, DeadReason.SIGNAL_LOST, "other_fatal", error.detail)

    def _recover_media(self, session: PlaybackSession) -> bool:
        recover = getattr(session.engine, "recover_media_error", None)
        if recover is None or session.media_recoveries >= self.media_recovery_limit:
            return False
        session.media_recoveries += 1
        LOG.info("Recovering media error in place for %s [%d/%d]", session.entry.name,
                 session.media_recoveries, self.media_recovery_limit)
        try:
            return recover() is not False
        except Exception as err:
            LOG.error("Media recovery failed for %s: %s", session.entry.name, err)
            return False

    def _on_deadline(self, session: PlaybackSession, attempt: int) -> None:
        if not self._is_live(session, attempt):
            return
        session.timer = None
        if session.state not in (SessionState.CONNECTING, SessionState.RECOVERING):
            return
        LOG.warning("No playback progress for %s within %.0fs", session.entry.name, self.connect_timeout)
        self._die(session, DeadReason.SIGNAL_LOST, "timeout", "Timed out waiting for the stream")

    # --- teardown ---

    def _die(self, session: PlaybackSession, reason: DeadReason, failure: str, detail: str) -> None:
        self._cancel_timer(session)
        self._detach(session)
        session.deadline = None
        session.state = SessionState.DEAD
        session.dead_reason = reason
        session.failure = failure
        session.detail = detail or reason.label
        LOG.info("Session for %s is dead (%s: %s)", session.entry.name, failure, session.detail)
        self._notify(session)

    def _cancel_timer(self, session: PlaybackSession) -> None:
        timer, session.timer = session.timer, None
        if timer is None:
            return
        try:
            timer.cancel()
        except Exception as err:
            LOG.debug("Timer cancel failed: %s", err)

    def _detach(self, session: PlaybackSession) -> None:
        engine, session.engine = session.engine, None
        if engine is None:
            return
        try:
            engine.detach()
        except Exception as err:
            LOG.warning("Engine detach failed for %s: %s", session.entry.name, err)

    def _discard_current(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        session.live = False
        self._cancel_timer(session)
        self._detach(session)
        LOG.debug("Discarded session for %s", session.entry.name)

    def _notify(self, session: Optional[PlaybackSession]) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(session)
        except Exception:
            LOG.exception("Session listener failed")
