"""Reconnect state machine — pure transitions over one state record.

Learn: All reconnect bookkeeping (phase, attempt counter, pending
delay, timer generation, last error notice) lives in a single frozen
ReconnectState. Every transition is a plain function returning the
next state, so the backoff rules can be tested without a socket or
an event loop:

    IDLE ──start──▶ CONNECTING ──opened──▶ OPEN
                        │                    │
                        └──────closed────────┤
                                             ▼
              attempts < max ─▶ BACKOFF ──retry due──▶ CONNECTING
              attempts = max ─▶ GAVE_UP  (until auth toggles)

disconnected() bumps the generation, which turns any retry timer
already in flight into a no-op (retry_due() checks it).
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from ticketflow.client.config import ClientConfig


class Phase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    BACKOFF = "backoff"
    GAVE_UP = "gave_up"


@dataclass(frozen=True)
class ReconnectState:
    phase: Phase = Phase.IDLE
    authenticated: bool = False
    attempts: int = 0
    next_delay_ms: Optional[int] = None
    generation: int = 0
    last_error_notice_at: Optional[float] = None  # ms, client clock


def backoff_delay(attempts: int, base_ms: int = 1000, max_ms: int = 30000) -> int:
    """min(base * 2^attempts, max) — 1s, 2s, 4s, 8s, 16s, 30s, 30s, ..."""
    return min(base_ms * 2 ** attempts, max_ms)


def set_authenticated(state: ReconnectState, authenticated: bool) -> ReconnectState:
    """Auth toggles. Either direction starts over from attempt 0."""
    if authenticated == state.authenticated:
        return state
    if authenticated:
        phase = Phase.IDLE if state.phase is Phase.GAVE_UP else state.phase
        return replace(state, authenticated=True, attempts=0, phase=phase)
    return replace(
        state,
        authenticated=False,
        phase=Phase.IDLE,
        attempts=0,
        next_delay_ms=None,
        generation=state.generation + 1,
    )


def can_connect(state: ReconnectState) -> bool:
    return state.authenticated and state.phase in (Phase.IDLE, Phase.BACKOFF)


def start_connecting(state: ReconnectState) -> ReconnectState:
    if not can_connect(state):
        return state
    return replace(state, phase=Phase.CONNECTING, next_delay_ms=None)


def connection_opened(state: ReconnectState) -> ReconnectState:
    return replace(state, phase=Phase.OPEN, attempts=0, next_delay_ms=None)


def connection_closed(
    state: ReconnectState,
    config: Optional[ClientConfig] = None,
) -> ReconnectState:
    """The transport closed or failed to open.

    Schedules a retry (BACKOFF) while authenticated and under the
    attempt cap. The delay uses the attempt count before the increment,
    so the first retry waits base_ms.
    """
    config = config or ClientConfig()
    if state.phase not in (Phase.CONNECTING, Phase.OPEN):
        # Close reported after disconnect() or a duplicate signal
        return state
    if not state.authenticated:
        return replace(state, phase=Phase.IDLE, next_delay_ms=None)
    if state.attempts >= config.max_attempts:
        return replace(state, phase=Phase.GAVE_UP, next_delay_ms=None)
    return replace(
        state,
        phase=Phase.BACKOFF,
        attempts=state.attempts + 1,
        next_delay_ms=backoff_delay(state.attempts, config.base_delay_ms, config.max_delay_ms),
        generation=state.generation + 1,
    )


def retry_due(state: ReconnectState, generation: int) -> bool:
    """Should a retry timer scheduled for generation act now?"""
    return (
        generation == state.generation
        and state.phase is Phase.BACKOFF
        and state.authenticated
    )


def disconnected(state: ReconnectState) -> ReconnectState:
    """Explicit teardown: back to IDLE, counter cleared, timers stale."""
    return replace(
        state,
        phase=Phase.IDLE,
        attempts=0,
        next_delay_ms=None,
        generation=state.generation + 1,
    )


def error_notice_due(
    state: ReconnectState,
    now_ms: float,
    interval_ms: int = 5000,
) -> tuple[ReconnectState, bool]:
    """Throttle connection-error notices to one per interval."""
    last = state.last_error_notice_at
    if last is not None and now_ms - last < interval_ms:
        return state, False
    return replace(state, last_error_notice_at=now_ms), True
