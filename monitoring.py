# Monitoring & Metrics
# File: monitoring.py

"""
Health monitoring and metrics for the operations console: counters for
telemetry, status and video flow, gauges for fleet and stream state,
component health checks and Prometheus text export.
"""

import statistics
import threading
import time
import logging
from collections import deque, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

HEALTHY = 'healthy'
DEGRADED = 'degraded'
UNHEALTHY = 'unhealthy'

# ============================================================================
# METRICS MODELS
# ============================================================================

@dataclass
class MetricPoint:
    """Single metric data point"""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class HealthCheck:
    """Health check result"""
    component: str
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict = field(default_factory=dict)
    latency_ms: Optional[float] = None

    def to_dict(self):
        return {
            'component': self.component,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'latency_ms': self.latency_ms
        }

# ============================================================================
# METRICS COLLECTOR
# ============================================================================

class MetricsCollector:
    """Thread-safe counters, gauges and histograms keyed by name and labels"""

    def __init__(self, retention_minutes: int = 60):
        """
        Args:
            retention_minutes: How long time series points are kept
        """
        self.retention_minutes = retention_minutes
        self.series: Dict[str, deque] = defaultdict(lambda: deque(maxlen=1000))
        self.counters: Dict[str, float] = defaultdict(float)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=1000))
        self.lock = threading.Lock()

    def record_counter(self, name: str, value: float = 1, labels: Dict = None):
        """Add to a monotonically increasing counter"""
        key = self._make_key(name, labels)
        with self.lock:
            self.counters[key] += value
            self.series[key].append(MetricPoint(datetime.now(), self.counters[key], dict(labels or {})))

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        key = self._make_key(name, labels)
        with self.lock:
            self.gauges[key] = value
            self.series[key].append(MetricPoint(datetime.now(), value, dict(labels or {})))

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """Observe one value of a distribution (latencies, sizes)"""
        key = self._make_key(name, labels)
        with self.lock:
            self.histograms[key].append(value)

    def get_counter(self, name: str, labels: Dict = None) -> float:
        return self.counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict = None) -> float:
        return self.gauges.get(self._make_key(name, labels), 0.0)

    def get_series(self, name: str, labels: Dict = None) -> List[MetricPoint]:
        """Points of one series within the retention period"""
        key = self._make_key(name, labels)
        cutoff = datetime.now() - timedelta(minutes=self.retention_minutes)
        with self.lock:
            return [p for p in self.series.get(key, []) if p.timestamp > cutoff]

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        key = self._make_key(name, labels)
        with self.lock:
            values = sorted(self.histograms.get(key, []))
        return self._summarize(values)

    @staticmethod
    def _summarize(values: List[float]) -> Dict:
        if not values:
            return {'count': 0, 'sum': 0, 'min': 0, 'max': 0, 'mean': 0, 'p50': 0, 'p95': 0, 'p99': 0}

        count = len(values)
        return {
            'count': count,
            'sum': sum(values),
            'min': values[0],
            'max': values[-1],
            'mean': statistics.mean(values),
            'p50': values[count // 2],
            'p95': values[int(count * 0.95)] if count > 20 else values[-1],
            'p99': values[int(count * 0.99)] if count > 100 else values[-1]
        }

    @staticmethod
    def _make_key(name: str, labels: Dict = None) -> str:
        """Prometheus-style key, e.g. frames_dropped_total{reason="all_zero"}"""
        if not labels:
            return name
        label_str = ','.join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_all_metrics(self) -> Dict:
        with self.lock:
            counters = dict(self.counters)
            gauges = dict(self.gauges)
            histograms = {k: sorted(v) for k, v in self.histograms.items()}

        return {
            'counters': counters,
            'gauges': gauges,
            'histograms': {k: self._summarize(v) for k, v in histograms.items()},
            'timestamp': datetime.now().isoformat()
        }

    def rate(self, name: str, labels: Dict = None, window_seconds: int = 60) -> float:
        """Per-second increase of a counter over the window"""
        window_start = datetime.now() - timedelta(seconds=window_seconds)
        points = [p for p in self.get_series(name, labels) if p.timestamp > window_start]
        if len(points) < 2:
            return 0.0

        value_diff = points[-1].value - points[0].value
        time_diff = (points[-1].timestamp - points[0].timestamp).total_seconds()
        return value_diff / time_diff if time_diff > 0 else 0.0

    def export_prometheus(self) -> str:
        """Render all metrics in Prometheus text exposition format"""
        metrics = self.get_all_metrics()
        output = []
        typed = set()

        def type_line(key, kind):
            base = key.split('{')[0]
            if base not in typed:
                typed.add(base)
                output.append(f"# TYPE {base} {kind}")

        for key in sorted(metrics['counters']):
            type_line(key, 'counter')
            output.append(f"{key} {metrics['counters'][key]}")

        for key in sorted(metrics['gauges']):
            type_line(key, 'gauge')
            output.append(f"{key} {metrics['gauges'][key]}")

        for key in sorted(metrics['histograms']):
            stats = metrics['histograms'][key]
            if not stats['count']:
                continue
            type_line(key, 'summary')
            base, _, labels = key.partition('{')
            labels = labels.rstrip('}')
            prefix = f"{labels}," if labels else ""
            suffix = f"{{{labels}}}" if labels else ""
            output.append(f"{base}_count{suffix} {stats['count']}")
            output.append(f"{base}_sum{suffix} {stats['sum']}")
            for q, stat in (('0.5', 'p50'), ('0.95', 'p95'), ('0.99', 'p99')):
                output.append(f'{base}{{{prefix}quantile="{q}"}} {stats[stat]}')

        return "\n".join(output) + "\n"

    def reset(self):
        with self.lock:
            self.series.clear()
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()
        logger.info("Metrics reset")

# ============================================================================
# HEALTH MONITOR
# ============================================================================

class HealthMonitor:
    """Runs registered health checks, periodically or on demand"""

    def __init__(self, check_interval: float = 30.0):
        self.checks: Dict[str, Callable] = {}
        self.health_history: deque = deque(maxlen=100)
        self.check_interval = check_interval
        self.running = False
        self.monitor_thread = None
        self._stop_event = threading.Event()

    def register_check(self, name: str, check_fn: Callable):
        """
        Register health check function

        Args:
            name: Check name
            check_fn: Function that returns HealthCheck or boolean
        """
        self.checks[name] = check_fn
        logger.info(f"Registered health check: {name}")

    def start(self):
        if self.running:
            logger.warning("Health monitor already running")
            return

        self.running = True
        self._stop_event.clear()
        self.monitor_thread = threading.Thread(
            target=self._monitor_loop,
            daemon=True,
            name="health-monitor"
        )
        self.monitor_thread.start()
        logger.info("Health monitor started")

    def stop(self):
        self.running = False
        self._stop_event.set()
        if self.monitor_thread:
            self.monitor_thread.join(timeout=5)
        logger.info("Health monitor stopped")

    def _monitor_loop(self):
        while self.running:
            results = self.run_checks()
            self.health_history.append({
                'timestamp': datetime.now().isoformat(),
                'results': [r.to_dict() for r in results]
            })

            unhealthy = [r.component for r in results if r.status == UNHEALTHY]
            degraded = [r.component for r in results if r.status == DEGRADED]
            if unhealthy:
                logger.warning(f"Unhealthy components detected: {unhealthy}")
            if degraded:
                logger.info(f"Degraded components: {degraded}")

            if self._stop_event.wait(self.check_interval):
                break

    def run_checks(self) -> List[HealthCheck]:
        """Run all registered checks; a raising check reports unhealthy"""
        results = []

        for name, check_fn in self.checks.items():
            start_time = time.time()
            try:
                result = check_fn()
            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                results.append(HealthCheck(component=name, status=UNHEALTHY, details={'error': str(e)}))
                continue

            latency = (time.time() - start_time) * 1000
            if isinstance(result, HealthCheck):
                result.latency_ms = latency
                results.append(result)
            else:
                results.append(HealthCheck(
                    component=name,
                    status=HEALTHY if result else UNHEALTHY,
                    latency_ms=latency
                ))

        return results

    def get_health_status(self) -> Dict:
        results = self.run_checks()

        overall_status = HEALTHY
        if any(r.status == UNHEALTHY for r in results):
            overall_status = UNHEALTHY
        elif any(r.status == DEGRADED for r in results):
            overall_status = DEGRADED

        return {
            'overall_status': overall_status,
            'checks': [r.to_dict() for r in results],
            'timestamp': datetime.now().isoformat(),
            'check_count': len(results)
        }

    def get_health_history(self, limit: int = 10) -> List[Dict]:
        return list(self.health_history)[-limit:]

# ============================================================================
# CONSOLE METRICS INTEGRATION
# ============================================================================

class ConsoleMetrics:
    """Health checks and gauges for an OperationsConsole"""

    def __init__(self, console, collector: MetricsCollector = None,
                 check_interval: float = 30.0, sample_interval: float = 10.0):
        """
        Args:
            console: OperationsConsole instance
            collector: Shared collector; the console's components record into it
        """
        self.console = console
        self.collector = collector or MetricsCollector()
        self.health_monitor = HealthMonitor(check_interval)
        self.sample_interval = sample_interval
        self.running = False
        self._stop_event = threading.Event()
        self.sampler_thread = None

        self.health_monitor.register_check('transport', self._check_transport)
        self.health_monitor.register_check('state_store', self._check_state_store)
        self.health_monitor.register_check('video', self._check_video)
        self.health_monitor.register_check('zones', self._check_zones)
        self.health_monitor.register_check('system_resources', self._check_system_resources)

    def _check_transport(self) -> HealthCheck:
        channel = self.console.channel
        pending = channel.pending()
        if not channel.connected:
            # Running without a broker is a supported local mode
            status = DEGRADED if self.console.kafka_bridge is None else UNHEALTHY
        else:
            status = DEGRADED if pending else HEALTHY

        return HealthCheck(
            component='transport',
            status=status,
            details={
                'state': channel.state.value,
                'subjects': channel.subjects(),
                'queued_messages': pending,
            }
        )

    def _check_state_store(self) -> HealthCheck:
        store = self.console.store
        return HealthCheck(
            component='state_store',
            status=HEALTHY,
            details={
                'drones': len(store),
                'active_drones': len(store.active_drone_ids()),
            }
        )

    def _check_video(self) -> HealthCheck:
        pipeline = self.console.video
        streams = pipeline.active_streams()
        not_ready = [d for d in streams if not (pipeline.stats(d) or {}).get('decoder_ready')]

        return HealthCheck(
            component='video',
            status=DEGRADED if not_ready else HEALTHY,
            details={'streams': streams, 'decoders_not_ready': not_ready}
        )

    def _check_zones(self) -> HealthCheck:
        status = self.console.zones.status()
        return HealthCheck(
            component='zones',
            status=HEALTHY if status['permit_polygons'] else DEGRADED,
            details=status
        )

    def _check_system_resources(self) -> HealthCheck:
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()

        status = HEALTHY
        if cpu_percent > 90 or memory.percent > 90:
            status = UNHEALTHY
        elif cpu_percent > 70 or memory.percent > 70:
            status = DEGRADED

        return HealthCheck(
            component='system_resources',
            status=status,
            details={
                'cpu_percent': cpu_percent,
                'memory_percent': memory.percent,
                'memory_available_gb': memory.available / (1024**3),
            }
        )

    def sample(self):
        """Record current fleet, stream and process gauges"""
        store = self.console.store
        self.collector.record_gauge('drones_total', len(store))
        self.collector.record_gauge('drones_active', len(store.active_drone_ids()))
        self.collector.record_gauge('video_streams_active', len(self.console.video.active_streams()))
        self.collector.record_gauge('transport_queued_messages', self.console.channel.pending())
        self.collector.record_gauge('transport_connected', 1 if self.console.channel.connected else 0)
        self.collector.record_gauge('system_cpu_percent', psutil.cpu_percent(interval=None))
        self.collector.record_gauge('system_memory_percent', psutil.virtual_memory().percent)

    def _sample_loop(self):
        while self.running:
            try:
                self.sample()
            except Exception as e:
                logger.error(f"Metrics sampling error: {e}")
            if self._stop_event.wait(self.sample_interval):
                break

    def start(self):
        self.running = True
        self._stop_event.clear()
        self.health_monitor.start()
        self.sampler_thread = threading.Thread(target=self._sample_loop, daemon=True, name="metrics-sampler")
        self.sampler_thread.start()
        logger.info("Console metrics started")

    def stop(self):
        self.running = False
        self._stop_event.set()
        self.health_monitor.stop()
        if self.sampler_thread:
            self.sampler_thread.join(timeout=5)
        logger.info("Console metrics stopped")

    def get_dashboard_data(self) -> Dict[str, Any]:
        return {
            'health': self.health_monitor.get_health_status(),
            'metrics': self.collector.get_all_metrics(),
            'rates': {
                'telemetry_per_second': self.collector.rate('telemetry_ingested_total'),
                'video_frames_per_second': self.collector.rate('video_frames_fed_total'),
            },
            'timestamp': datetime.now().isoformat()
        }

    def export_prometheus(self) -> str:
        self.sample()
        return self.collector.export_prometheus()
