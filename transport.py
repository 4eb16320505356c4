# Transport Channel
# File: transport.py

"""
In-process push channel between the live operations core and the outside
world.

Inbound events are dispatched by subject to subscribed handlers in arrival
order. Outbound command messages go through an attached sender; while the
channel is disconnected they are queued and flushed on reconnect.
Connectivity changes are propagated to listeners, never swallowed.
"""

import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import config
from models import Waypoint

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class DroneCommand(str, Enum):
    START_VIDEO_STREAM = "start_video_stream"
    STOP_VIDEO_STREAM = "stop_video_stream"
    TAKEOFF = "takeoff"
    LAND = "land"


# ============================================================================
# COMMAND MESSAGES
# ============================================================================

def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def build_drone_command(drone_id: str, command: Any, timestamp: Optional[str] = None) -> Dict:
    """Build a drone:command message"""
    command = DroneCommand(command)
    return {
        'action': config.ACTION_DRONE_COMMAND,
        'payload': {
            'droneId': drone_id,
            'command': command.value,
            'timestamp': timestamp or _iso_now(),
        },
    }


def build_join_drone(drone_id: str) -> Dict:
    """Join the drone's room so its events are pushed to this console"""
    return {'action': config.ACTION_JOIN_DRONE, 'payload': {'droneId': drone_id}}


def build_mission_start(drone_id: str, waypoints: Sequence[Waypoint],
                        timestamp: Optional[str] = None) -> Dict:
    """Build a mission:start message from a drone's ordered waypoints"""
    ordered = sorted(waypoints, key=lambda wp: wp.seq_number)
    return {
        'action': config.ACTION_MISSION_START,
        'payload': {
            'droneId': drone_id,
            'mission': {
                'waypoints': [
                    {
                        'latitude': wp.lat,
                        'longitude': wp.lon,
                        'altitude': wp.altitude_m,
                        'action': wp.action,
                    }
                    for wp in ordered if wp.has_position
                ],
                'timestamp': timestamp or _iso_now(),
            },
        },
    }


# ============================================================================
# CHANNEL
# ============================================================================

class TransportChannel:
    """Subject-based push channel with an offline outbound queue"""

    def __init__(self, sender: Callable[[Dict], None] = None,
                 subscriber: Callable[[List[str]], None] = None,
                 queue_size: int = 1000):
        """
        Args:
            sender: Delivers one outbound message to the remote side
            subscriber: Told which subjects are wanted, on first
                subscription to a subject and again after every reconnect
            queue_size: Outbound messages kept while disconnected
        """
        self.handlers: Dict[str, List[Handler]] = defaultdict(list)
        self.outbox = deque(maxlen=queue_size)
        self.connection_listeners: List[Callable[[ConnectionState], None]] = []
        self.state = ConnectionState.DISCONNECTED
        self.sender = sender
        self.subscriber = subscriber
        self.lock = threading.RLock()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def subscribe(self, subject: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to a subject; returns a function that unsubscribes"""
        with self.lock:
            first = not self.handlers.get(subject)
            self.handlers[subject].append(handler)
            connected = self.state == ConnectionState.CONNECTED

        logger.info(f"Subscribed to {subject}")
        if first and connected:
            self._announce([subject])

        return lambda: self.unsubscribe(subject, handler)

    def unsubscribe(self, subject: str, handler: Handler):
        with self.lock:
            handlers = self.handlers.get(subject, [])
            if handler in handlers:
                handlers.remove(handler)
                logger.info(f"Unsubscribed from {subject}")
            if not handlers:
                self.handlers.pop(subject, None)

    def subjects(self) -> List[str]:
        with self.lock:
            return [s for s, handlers in self.handlers.items() if handlers]

    def has_subscribers(self, subject: str) -> bool:
        with self.lock:
            return bool(self.handlers.get(subject))

    def dispatch(self, subject: str, payload: Any) -> int:
        """
        Deliver one inbound event to every handler of the subject.

        A failing handler is logged and does not stop delivery to the
        others.

        Returns:
            Number of handlers that completed
        """
        with self.lock:
            handlers = list(self.handlers.get(subject, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Handler error for {subject}: {e}")

        if not handlers:
            logger.debug(f"No handlers for {subject}")

        return delivered

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, message: Dict) -> bool:
        """
        Send an outbound message, queueing it while disconnected.

        Returns:
            True if delivered now, False if queued
        """
        with self.lock:
            if self.state != ConnectionState.CONNECTED or self.sender is None:
                self.outbox.append(message)
                logger.debug(f"Queued {message.get('action')} while disconnected")
                return False

        try:
            self.sender(message)
            return True
        except Exception as e:
            logger.error(f"Failed to send {message.get('action')}: {e}")
            with self.lock:
                self.outbox.append(message)
            return False

    def send_command(self, drone_id: str, command: Any) -> bool:
        return self.send(build_drone_command(drone_id, command))

    def pending(self) -> int:
        return len(self.outbox)

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def on_connection_change(self, listener: Callable[[ConnectionState], None]):
        self.connection_listeners.append(listener)

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def set_connected(self, connected: bool):
        """Record a connectivity change from the underlying transport"""
        new_state = ConnectionState.CONNECTED if connected else ConnectionState.DISCONNECTED

        with self.lock:
            if new_state == self.state:
                return
            self.state = new_state

        if connected:
            logger.info("Transport connected")
            self._announce(self.subjects())
            self._flush()
        else:
            logger.warning("Transport disconnected")

        for listener in list(self.connection_listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"Connection listener error: {e}")

    def _announce(self, subjects: List[str]):
        if self.subscriber is None or not subjects:
            return
        try:
            self.subscriber(subjects)
        except Exception as e:
            logger.error(f"Failed to subscribe {subjects}: {e}")

    def _flush(self):
        with self.lock:
            queued = list(self.outbox)
            self.outbox.clear()

        if queued:
            logger.info(f"Flushing {len(queued)} queued messages")

        for index, message in enumerate(queued):
            if not self.send(message):
                # send() re-queued this one; keep the rest behind it
                with self.lock:
                    self.outbox.extend(queued[index + 1:])
                break
