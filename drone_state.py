# Active-Drone State Store
# File: drone_state.py

"""
Single source of truth for where each drone is right now and how it got
there.

The store is an owned map keyed by drone id. Create one at application
start and pass it to the readers that need it. Writes for one drone are
serialized by a per-id lock, so Kafka consumer threads for different
drones do not block each other. Listeners are notified synchronously
after every mutation.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import config
import telemetry_mapper
from models import DroneLiveState, DroneStatus, HistorySample, Telemetry

logger = logging.getLogger(__name__)

StateListener = Callable[[DroneLiveState], None]


def now_ms() -> float:
    return time.time() * 1000


class DroneStateStore:
    """Per-drone live state with bounded path and history buffers"""

    def __init__(self, clock: Callable[[], float] = None, metrics=None):
        """
        Args:
            clock: Returns the current time in ms since epoch
            metrics: Optional MetricsCollector for ingest counters
        """
        self._clock = clock or now_ms
        self._metrics = metrics
        self._states: Dict[str, DroneLiveState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it"""
        with self._guard:
            self._listeners.append(listener)

        def unsubscribe():
            with self._guard:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, state: DroneLiveState):
        with self._guard:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener error for {state.drone_id}: {e}")

    def _lock_for(self, drone_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(drone_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[drone_id] = lock
            return lock

    def _record(self, name: str, labels: Dict = None):
        if self._metrics is not None:
            self._metrics.record_counter(name, labels=labels)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ingest(self, event: Any) -> List[DroneLiveState]:
        """
        Merge one telemetry event or a batch of them into live state.

        Events may be Telemetry objects or raw payloads; raw payloads
        without a timestamp are stamped with the receive time. Invalid
        payloads are dropped.

        Returns:
            Updated live states, one per accepted event
        """
        events = telemetry_mapper.normalize_telemetry_batch(event, self._clock())
        updated = []

        for telemetry in events:
            with self._lock_for(telemetry.drone_id):
                state = self._apply_telemetry(telemetry)
            self._record('telemetry_ingested_total')
            self._notify(state)
            updated.append(state)

        return updated

    def _apply_telemetry(self, t: Telemetry) -> DroneLiveState:
        state = self._states.get(t.drone_id)

        if state is None:
            state = DroneLiveState(telemetry=t)
            with self._guard:
                self._states[t.drone_id] = state
            logger.info(f"New drone in live state: {t.drone_id}")
        else:
            if not state.has_fix:
                # Roster placeholder position never enters the trail
                state.path.clear()
                state.has_fix = True

            previous = state.telemetry
            state.telemetry = Telemetry(
                drone_id=t.drone_id,
                lat=t.lat,
                lon=t.lon,
                timestamp=t.timestamp,
                altitude=t.altitude if t.altitude is not None else previous.altitude,
                heading=t.heading if t.heading is not None else previous.heading,
                speed=t.speed if t.speed is not None else previous.speed,
                battery=t.battery if t.battery is not None else previous.battery,
            )

        state.path.append((t.lon, t.lat))

        if t.battery is not None:
            state.battery_history.append(HistorySample(t.timestamp, t.battery))
        if t.altitude is not None:
            state.altitude_history.append(HistorySample(t.timestamp, t.altitude))
        if t.speed is not None:
            state.speed_history.append(HistorySample(t.timestamp, t.speed))

        return state

    def _placeholder(self, drone_id: str, name: Optional[str] = None,
                     status: Optional[DroneStatus] = None) -> DroneLiveState:
        lon, lat = config.PLACEHOLDER_POSITION
        return DroneLiveState(
            telemetry=Telemetry(drone_id=drone_id, lat=lat, lon=lon, timestamp=0),
            status=status,
            name=name,
            has_fix=False,
        )

    def status_update(self, drone_id: Any, status: Any = None) -> Optional[DroneLiveState]:
        """
        Overwrite a drone's status without touching telemetry.

        Accepts (drone_id, status) or a raw {droneId, status} payload.
        Unknown ids get a placeholder entry.
        """
        if isinstance(drone_id, dict):
            parsed = telemetry_mapper.normalize_status(drone_id)
        else:
            parsed = telemetry_mapper.normalize_status({'droneId': drone_id, 'status': status})
        if parsed is None:
            return None

        drone_id, status = parsed

        with self._lock_for(drone_id):
            state = self._states.get(drone_id)
            if state is None:
                state = self._placeholder(drone_id, status=status)
                with self._guard:
                    self._states[drone_id] = state
            else:
                state.status = status

        logger.info(f"Drone {drone_id} status: {status.value}")
        self._record('status_updates_total', {'status': status.value})
        self._notify(state)
        return state

    def load_roster(self, entries: Iterable[Any]) -> int:
        """
        Seed live state from the fleet roster.

        Unknown drones get a placeholder position (inactive until real
        telemetry arrives). Known drones are enriched with name and, if
        no status has been reported yet, the roster status.

        Returns:
            Number of roster entries applied
        """
        roster = telemetry_mapper.normalize_roster(entries)

        for entry in roster:
            with self._lock_for(entry.drone_id):
                state = self._states.get(entry.drone_id)
                if state is None:
                    state = self._placeholder(entry.drone_id, entry.name, entry.status)
                    with self._guard:
                        self._states[entry.drone_id] = state
                else:
                    if entry.name:
                        state.name = entry.name
                    if state.status is None and entry.status is not None:
                        state.status = entry.status
            self._notify(state)

        logger.info(f"Roster loaded: {len(roster)} drones")
        return len(roster)

    def clear(self):
        with self._guard:
            self._states.clear()
            self._locks.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, drone_id: str) -> Optional[DroneLiveState]:
        return self._states.get(drone_id)

    def is_active(self, drone_id: str, now: Optional[float] = None) -> bool:
        """True iff the drone's last telemetry is younger than the staleness window"""
        state = self._states.get(drone_id)
        if state is None or not state.has_fix:
            return False
        current = self._clock() if now is None else now
        return current - state.telemetry.timestamp < config.ACTIVE_WINDOW_MS

    def drone_ids(self) -> List[str]:
        with self._guard:
            return list(self._states.keys())

    def active_drone_ids(self, now: Optional[float] = None) -> List[str]:
        current = self._clock() if now is None else now
        return [d for d in self.drone_ids() if self.is_active(d, current)]

    def snapshot(self, now: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """Render-ready copy of every drone's live state"""
        current = self._clock() if now is None else now
        result = {}
        for drone_id in self.drone_ids():
            state = self._states.get(drone_id)
            if state is None:
                continue
            with self._lock_for(drone_id):
                result[drone_id] = state.to_dict(active=self.is_active(drone_id, current))
        return result

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, drone_id: str) -> bool:
        return drone_id in self._states
