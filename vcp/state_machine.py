import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)

# Simulation parameters, not protocol requirements: a session "charges" one
# meter unit every 100 ms and is sampled every 15 s.
METER_VALUES_INTERVAL_SEC = 15
METER_RATE_DIVISOR = 100

TransactionId = Union[int, str]


@dataclass
class TransactionState:
    transaction_id: TransactionId
    id_tag: str
    connector_id: int
    meter_start: float
    started_at: datetime
    evse_id: Optional[int] = None
    meter_value: float = 0
    seq_no: int = 0
    # clock reading at start, used for the meter ramp
    started_clock: float = 0.0


MeterValuesCallback = Callable[[TransactionState], Any]


class TransactionManager:
    """Active sessions and connector reservations of one station."""

    def __init__(
        self,
        meter_values_interval: float = METER_VALUES_INTERVAL_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.meter_values_interval = meter_values_interval
        self._clock = clock
        self.transactions: Dict[TransactionId, TransactionState] = {}
        self._timers: Dict[TransactionId, asyncio.Task] = {}
        self._pending_connectors: Set[int] = set()
        self._connector_meter_values: Dict[int, float] = {}

    # -------- reservations --------
    def can_start(self, connector_id: int) -> bool:
        if connector_id in self._pending_connectors:
            return False
        return self.find_by_connector(connector_id) is None

    def reserve(self, connector_id: int) -> bool:
        if not self.can_start(connector_id):
            return False
        self._pending_connectors.add(connector_id)
        return True

    def release(self, connector_id: int) -> None:
        self._pending_connectors.discard(connector_id)

    def release_all(self) -> List[int]:
        connectors = sorted(self._pending_connectors)
        self._pending_connectors.clear()
        return connectors

    def is_reserved(self, connector_id: int) -> bool:
        return connector_id in self._pending_connectors

    # -------- transactions --------
    def start(
        self,
        connector_id: int,
        transaction_id: TransactionId,
        id_tag: str,
        evse_id: Optional[int] = None,
        callback: Optional[MeterValuesCallback] = None,
    ) -> TransactionState:
        """Record a running session; samples go to ``callback`` every interval."""
        self.release(connector_id)
        meter_start = self.connector_meter_value(connector_id)
        state = TransactionState(
            transaction_id=transaction_id,
            id_tag=id_tag,
            connector_id=connector_id,
            meter_start=meter_start,
            meter_value=meter_start,
            started_at=datetime.now(timezone.utc),
            started_clock=self._clock(),
            evse_id=evse_id,
        )
        self._cancel_timer(transaction_id)
        self.transactions[transaction_id] = state
        if callback is not None:
            self._timers[transaction_id] = asyncio.get_running_loop().create_task(
                self._meter_values_loop(transaction_id, callback)
            )
        logger.info(
            f"Transaction started: tx={transaction_id}, connector={connector_id}, meterStart={meter_start}"
        )
        return state

    def stop(self, transaction_id: TransactionId) -> Optional[TransactionState]:
        """Forget a transaction; unknown ids are ignored."""
        state = self.transactions.get(transaction_id)
        self._cancel_timer(transaction_id)
        if state is None:
            return None
        final = self._current_value(state)
        self._connector_meter_values[state.connector_id] = final
        del self.transactions[transaction_id]
        logger.info(f"Transaction stopped: tx={transaction_id}, meterStop={final}")
        return replace(state, meter_value=final)

    def stop_all(self) -> None:
        for transaction_id in list(self.transactions):
            self.stop(transaction_id)

    def get(self, transaction_id: TransactionId) -> Optional[TransactionState]:
        return self.transactions.get(transaction_id)

    def find_by_connector(self, connector_id: int) -> Optional[TransactionState]:
        for state in self.transactions.values():
            if state.connector_id == connector_id:
                return state
        return None

    def next_seq_no(self, transaction_id: TransactionId) -> int:
        state = self.transactions.get(transaction_id)
        if state is None:
            return 0
        seq_no = state.seq_no
        state.seq_no += 1
        return seq_no

    # -------- metering --------
    def meter_value(self, transaction_id: TransactionId) -> float:
        state = self.transactions.get(transaction_id)
        if state is None:
            return 0
        return self._current_value(state)

    def connector_meter_value(self, connector_id: int) -> float:
        return self._connector_meter_values.get(connector_id, 0)

    def _current_value(self, state: TransactionState) -> float:
        elapsed_ms = (self._clock() - state.started_clock) * 1000
        return state.meter_start + elapsed_ms / METER_RATE_DIVISOR

    async def _meter_values_loop(self, transaction_id: TransactionId, callback: MeterValuesCallback):
        while True:
            await asyncio.sleep(self.meter_values_interval)
            state = self.transactions.get(transaction_id)
            if state is None:
                return
            try:
                result = callback(replace(state, meter_value=self._current_value(state)))
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Meter values callback failed for tx={transaction_id}")

    def _cancel_timer(self, transaction_id: TransactionId) -> None:
        task = self._timers.pop(transaction_id, None)
        if task is not None:
            task.cancel()
