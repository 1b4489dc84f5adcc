import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

_NOTHING = object()

Emit = Callable[[str, Any], None]


class ThrottleGate:
    """
    Time gate for a single key.

    The first notify after a quiet period is emitted immediately. Notifies that
    arrive within ``delay_ms`` of the last emission are coalesced: only the most
    recent value is kept and emitted once, when the window elapses.
    """

    def __init__(self, key: str, delay_ms: int, emit: Emit, clock: Callable[[], float] = time.monotonic):
        self.key = key
        self.delay_sec = max(0, int(delay_ms)) / 1000.0
        self._emit = emit
        self._clock = clock
        self._last_emit_at: Optional[float] = None
        self._pending: Any = _NOTHING
        self._timer: Optional[asyncio.TimerHandle] = None
        self.closed = False
        self.emitted_count = 0

    @property
    def has_pending(self) -> bool:
        return self._pending is not _NOTHING

    def notify(self, value: Any):
        if self.closed:
            return
        if self.delay_sec <= 0:
            self._fire(value)
            return

        now = self._clock()
        window_open = self._last_emit_at is not None and (now - self._last_emit_at) < self.delay_sec
        if self._timer is None and not window_open:
            self._fire(value)
            return

        self._pending = value
        if self._timer is None:
            wait = self.delay_sec - (now - self._last_emit_at)
            self._timer = asyncio.get_running_loop().call_later(max(0.0, wait), self._flush)

    def cancel(self):
        """Drops any pending value without emitting it."""
        self.closed = True
        self._pending = _NOTHING
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _flush(self):
        self._timer = None
        if self.closed or self._pending is _NOTHING:
            return
        value = self._pending
        self._pending = _NOTHING
        self._fire(value)

    def _fire(self, value: Any):
        self._last_emit_at = self._clock()
        self.emitted_count += 1
        try:
            self._emit(self.key, value)
        except Exception:
            logger.exception("Throttled emit failed key=%s", self.key)


class ThrottleLayer:
    """
    Arena of independent per-instrument gates sharing one emit callback.
    Gates are created and destroyed explicitly; a rebuild drops pending values.
    """

    def __init__(self, emit: Emit, clock: Callable[[], float] = time.monotonic):
        self._emit = emit
        self._clock = clock
        self._gates: Dict[str, ThrottleGate] = {}
        self.delay_ms = 0

    def register(self, key: str, delay_ms: int) -> ThrottleGate:
        previous = self._gates.pop(key, None)
        if previous is not None:
            previous.cancel()
        gate = ThrottleGate(key, delay_ms, self._emit, clock=self._clock)
        self._gates[key] = gate
        return gate

    @staticmethod
    def notify(handle: ThrottleGate, value: Any):
        handle.notify(value)

    def notify_key(self, key: str, value: Any):
        gate = self._gates.get(key)
        if gate is None:
            gate = self.register(key, self.delay_ms)
        gate.notify(value)

    def rebuild(self, keys: Iterable[str], delay_ms: int):
        dropped = self.close()
        self.delay_ms = max(0, int(delay_ms))
        for key in keys:
            self.register(key, self.delay_ms)
        logger.info(
            "Throttle gates rebuilt count=%s delay_ms=%s dropped_pending=%s",
            len(self._gates),
            self.delay_ms,
            dropped,
        )

    def close(self) -> int:
        dropped = 0
        for gate in self._gates.values():
            if gate.has_pending:
                dropped += 1
            gate.cancel()
        self._gates.clear()
        return dropped

    def gate(self, key: str) -> Optional[ThrottleGate]:
        return self._gates.get(key)

    def __len__(self) -> int:
        return len(self._gates)
