# Kafka Transport Bridge
# File: kafka_integration.py

"""
Kafka integration for the live operations transport.

Inbound topics (telemetry, status, video frames) are consumed on one
thread per topic and dispatched onto the TransportChannel subjects.
Outbound command messages from the channel are published to the command
topics, keyed by drone id so one drone's commands stay ordered.
"""

import json
import logging
import threading
from typing import Callable, Dict, List, Optional, Set

from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError

import config
from config import KafkaTopics
from transport import TransportChannel

logger = logging.getLogger(__name__)

# Inbound topic -> transport subject
INBOUND_TOPICS = {
    KafkaTopics.TELEMETRY: config.SUBJECT_TELEMETRY,
    KafkaTopics.STATUS: config.SUBJECT_STATUS,
    KafkaTopics.VIDEO_FRAMES: config.SUBJECT_VIDEO_FRAME,
}

# Outbound action -> topic
OUTBOUND_TOPICS = {
    config.ACTION_DRONE_COMMAND: KafkaTopics.COMMANDS,
    config.ACTION_JOIN_DRONE: KafkaTopics.COMMANDS,
    config.ACTION_MISSION_START: KafkaTopics.MISSIONS,
}


def topics_for_subjects(subjects: List[str]) -> List[str]:
    return [topic for topic, subject in INBOUND_TOPICS.items() if subject in subjects]


# ============================================================================
# KAFKA PRODUCER
# ============================================================================

class KafkaCommandProducer:
    """Publishes outbound console messages to Kafka"""

    def __init__(self, bootstrap_servers: List[str], client_id: str = "fleetops-producer"):
        """
        Initialize Kafka producer

        Args:
            bootstrap_servers: List of Kafka broker addresses
            client_id: Client identifier for this producer
        """
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.producer = None
        self._connect()

    def _connect(self):
        """Establish connection to Kafka brokers"""
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1,  # Keep per-drone ordering
            )
            logger.info(f"Kafka producer connected: {self.bootstrap_servers}")
        except KafkaError as e:
            logger.error(f"Failed to connect Kafka producer: {e}")
            raise

    def publish(self, message: Dict):
        """
        Publish one outbound message to the topic for its action

        Args:
            message: {action, payload} message built by the transport
        """
        action = message.get('action')
        topic = OUTBOUND_TOPICS.get(action)
        if topic is None:
            raise ValueError(f"No Kafka topic for action {action!r}")

        payload = message.get('payload') or {}
        self._send(topic, message, key=payload.get('droneId'))
        logger.debug(f"Published {action} for {payload.get('droneId')}")

    def _send(self, topic: str, message: Dict, key: Optional[str] = None):
        try:
            self.producer.send(topic, value=message, key=key)
        except KafkaError as e:
            logger.error(f"Failed to send message to {topic}: {e}")
            raise

    def flush(self, timeout: int = None):
        if self.producer:
            self.producer.flush(timeout=timeout)
            logger.debug("Producer flushed")

    def close(self):
        """Close producer connection"""
        if self.producer:
            self.producer.close()
            self.producer = None
            logger.info("Kafka producer closed")


# ============================================================================
# KAFKA CONSUMER
# ============================================================================

class KafkaEventConsumer:
    """Consumes inbound topics, one thread per topic"""

    def __init__(self, bootstrap_servers: List[str], group_id: str, client_id: str = None,
                 on_connection_change: Callable[[bool], None] = None):
        """
        Initialize Kafka consumer

        Args:
            bootstrap_servers: List of Kafka broker addresses
            group_id: Consumer group ID
            client_id: Optional client identifier
            on_connection_change: Called with True while at least one topic
                consumer is connected and False once none are
        """
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.client_id = client_id or f"{group_id}-consumer"
        self.on_connection_change = on_connection_change
        self.consumers: Dict[str, KafkaConsumer] = {}
        self.handlers: Dict[str, List[Callable]] = {}
        self.threads: Dict[str, threading.Thread] = {}
        self.connected_topics: Set[str] = set()
        self.running = False
        self.lock = threading.Lock()

    def subscribe(self, topic: str, handler: Callable):
        """
        Subscribe to topic with handler. Topics added after start() get
        their consumer thread immediately.
        """
        with self.lock:
            self.handlers.setdefault(topic, []).append(handler)
            start_now = self.running and topic not in self.threads

        logger.info(f"Subscribed to topic: {topic}")
        if start_now:
            self._start_topic(topic)

    def start(self):
        """Start consuming messages from all subscribed topics"""
        self.running = True
        for topic in list(self.handlers.keys()):
            if topic not in self.threads:
                self._start_topic(topic)
        logger.info(f"Kafka consumers started for {len(self.handlers)} topics")

    def _start_topic(self, topic: str):
        thread = threading.Thread(
            target=self._consume_topic,
            args=(topic,),
            daemon=True,
            name=f"consumer-{topic}"
        )
        with self.lock:
            self.threads[topic] = thread
        thread.start()

    def _consume_topic(self, topic: str):
        try:
            consumer = KafkaConsumer(
                topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                client_id=f"{self.client_id}-{topic}",
                value_deserializer=lambda m: json.loads(m.decode('utf-8')),
                key_deserializer=lambda k: k.decode('utf-8') if k else None,
                auto_offset_reset='latest',  # Live data only
                enable_auto_commit=True,
                max_poll_records=100
            )
        except KafkaError as e:
            logger.error(f"Error in consumer for {topic}: {e}")
            self._topic_connection(topic, False)
            with self.lock:
                self.threads.pop(topic, None)
            return

        self.consumers[topic] = consumer
        self._topic_connection(topic, True)
        logger.info(f"Started consuming from {topic}")

        try:
            while self.running:
                messages = consumer.poll(timeout_ms=1000, max_records=100)

                for topic_partition, records in messages.items():
                    for record in records:
                        self._process_message(topic, record.value)
        except KafkaError as e:
            logger.error(f"Consumer for {topic} failed: {e}")
        finally:
            self._topic_connection(topic, False)
            consumer.close()
            self.consumers.pop(topic, None)
            with self.lock:
                self.threads.pop(topic, None)
            logger.info(f"Stopped consuming from {topic}")

    def _process_message(self, topic: str, message: Dict):
        for handler in self.handlers.get(topic, []):
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Handler error for {topic}: {e}")

    def _topic_connection(self, topic: str, connected: bool):
        """Report the aggregate state, connected while any topic consumer is up"""
        with self.lock:
            if connected:
                self.connected_topics.add(topic)
            else:
                self.connected_topics.discard(topic)
            any_connected = bool(self.connected_topics)

        if self.on_connection_change is not None:
            self.on_connection_change(any_connected)

    def stop(self):
        """Stop consuming messages"""
        logger.info("Stopping Kafka consumers...")
        self.running = False

        with self.lock:
            threads = list(self.threads.values())

        for thread in threads:
            thread.join(timeout=5)

        logger.info("Kafka consumers stopped")


# ============================================================================
# TRANSPORT BRIDGE
# ============================================================================

class TransportKafkaBridge:
    """Connects a TransportChannel to Kafka"""

    def __init__(self, channel: TransportChannel, bootstrap_servers: List[str],
                 group_id: str = "fleetops-console"):
        """
        Args:
            channel: Channel to feed and to take outbound messages from
            bootstrap_servers: List of Kafka broker addresses
            group_id: Consumer group ID
        """
        self.channel = channel
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.producer: Optional[KafkaCommandProducer] = None
        self.consumer = KafkaEventConsumer(
            bootstrap_servers,
            group_id,
            on_connection_change=channel.set_connected,
        )

    def start(self):
        """Attach to the channel and start consuming its subscribed subjects"""
        self.producer = KafkaCommandProducer(self.bootstrap_servers, client_id=self.group_id)
        self.channel.sender = self.producer.publish
        self.channel.subscriber = self.subscribe_subjects

        self.subscribe_subjects(self.channel.subjects())
        self.consumer.start()
        logger.info("Kafka bridge started")

    def subscribe_subjects(self, subjects: List[str]):
        """Consume the topics behind the given subjects, once each"""
        for topic in topics_for_subjects(subjects):
            if topic in self.consumer.handlers:
                continue
            subject = INBOUND_TOPICS[topic]
            self.consumer.subscribe(topic, self._forwarder(subject))

    def _forwarder(self, subject: str) -> Callable[[Dict], None]:
        def forward(message):
            self.channel.dispatch(subject, message)
        return forward

    def stop(self):
        """Stop Kafka integration"""
        self.consumer.stop()
        if self.producer:
            self.producer.flush()
            self.producer.close()
        self.channel.sender = None
        self.channel.set_connected(False)
        logger.info("Kafka bridge stopped")
