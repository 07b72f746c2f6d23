"""Агрегований стан з'єднання за життєвим циклом каналів."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

log = logging.getLogger("schedule_sync.connection")
if not log.handlers:
    log.addHandler(logging.NullHandler())

STATE_IDLE = "idle"
STATE_SUBSCRIBING = "subscribing"
STATE_SUBSCRIBED = "subscribed"
STATE_ERROR = "error"
STATE_CLOSED = "closed"

CHANNEL_STATES = (STATE_IDLE, STATE_SUBSCRIBING, STATE_SUBSCRIBED, STATE_ERROR, STATE_CLOSED)

DEFAULT_ERROR_MESSAGE = "Connection error"


@dataclass(frozen=True)
class ConnectionState:
    is_connected: bool = False
    connection_error: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        return {"isConnected": self.is_connected, "connectionError": self.connection_error}


class ConnectionStateTracker:
    """Зводить переходи станів каналів до пари (isConnected, connectionError).

    Первинний канал (перший зареєстрований) визначає `isConnected`.
    Помилка вторинного каналу лише записує `connectionError`, якщо
    `secondary_errors_disconnect` не увімкнено.
    """

    def __init__(self, *, secondary_errors_disconnect: bool = False) -> None:
        self._secondary_errors_disconnect = secondary_errors_disconnect
        self._channels: List[str] = []
        self._states: Dict[str, str] = {}
        self._state = ConnectionState()

    @property
    def primary(self) -> Optional[str]:
        return self._channels[0] if self._channels else None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def channel_states(self) -> Dict[str, str]:
        return dict(self._states)

    def register(self, channel: str) -> None:
        if channel not in self._channels:
            self._channels.append(channel)
            self._states[channel] = STATE_IDLE

    def reset(self) -> None:
        self._channels.clear()
        self._states.clear()
        self._state = ConnectionState()

    def on_transition(self, channel: str, state: str, error: Optional[str] = None) -> ConnectionState:
        if state not in CHANNEL_STATES:
            raise ValueError(f"Невідомий стан каналу: {state}")
        self.register(channel)
        self._states[channel] = state
        current = self._state
        if channel == self.primary:
            if state == STATE_SUBSCRIBED:
                current = ConnectionState(is_connected=True, connection_error=None)
            elif state == STATE_ERROR:
                current = ConnectionState(is_connected=False, connection_error=error or DEFAULT_ERROR_MESSAGE)
            elif state == STATE_CLOSED:
                current = ConnectionState(is_connected=False, connection_error=current.connection_error)
        elif state == STATE_ERROR:
            connected = current.is_connected and not self._secondary_errors_disconnect
            current = ConnectionState(is_connected=connected, connection_error=error or DEFAULT_ERROR_MESSAGE)
        if current != self._state:
            log.info(
                "Стан з'єднання: isConnected=%s, connectionError=%s (канал %s → %s)",
                current.is_connected,
                current.connection_error,
                channel,
                state,
            )
            self._state = current
        return current
