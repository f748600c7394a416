"""
Monitoring
==========

Metrics cho console của agent:
- search: số lần tìm, số lần bị truy vấn mới hơn thay thế, độ trễ
- luồng quyết định: phiên, resolution clear/unclear, lookup miss, rewind do option bị xóa
- editor: số thao tác trên ma trận
- lỗi theo loại

Không có Redis thì metrics chỉ nằm trong bộ nhớ của process;
có Redis thì counter và histogram được chia sẻ giữa console và metrics server.
"""

import time
import logging
import json
import threading
from datetime import datetime
from typing import Optional, Dict, List, Tuple, Callable
from dataclasses import dataclass, field, asdict
from collections import defaultdict, deque

logger = logging.getLogger(__name__)


RESOLUTION_KINDS = ("clear", "unclear")

HISTOGRAM_WINDOW = 5000
RETENTION_SECONDS = 24 * 3600


def metric_key(name: str, labels: Dict[str, str] = None) -> str:
    """searches_total, resolutions_by_kind{kind=clear}, ..."""
    if not labels:
        return name
    rendered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return name + "{" + rendered + "}"


def percentile(ordered: List[float], q: float) -> float:
    # nearest-rank trên danh sách đã sắp xếp
    if not ordered:
        return 0
    return ordered[min(int(len(ordered) * q), len(ordered) - 1)]


@dataclass
class HealthStatus:
    name: str
    healthy: bool
    message: str = ""
    latency_ms: float = 0
    checked_at: float = field(default_factory=time.time)


@dataclass
class DashboardStats:
    searches_total: int = 0
    searches_superseded: int = 0
    avg_search_latency_ms: float = 0
    p50_search_latency_ms: float = 0
    p95_search_latency_ms: float = 0
    p99_search_latency_ms: float = 0

    sessions_started: int = 0
    clear_resolutions: int = 0
    unclear_resolutions: int = 0
    lookup_misses: int = 0
    lookup_miss_rate: float = 0
    stale_rewinds: int = 0
    scripts_copied: int = 0

    matrix_mutations: int = 0
    error_count: int = 0

    redis_healthy: bool = False
    uptime_seconds: float = 0
    period_end: str = ""


class MetricsCollector:
    """
    Counter và histogram (cửa sổ HISTOGRAM_WINDOW giá trị gần nhất).

    Ghi luôn vào bộ nhớ; khi Redis đang kết nối thì ghi thêm vào Redis
    và đọc từ Redis để mọi process thấy cùng số liệu.
    """

    def __init__(self, redis_manager=None):
        self.redis = redis_manager
        self._counters: Dict[str, int] = defaultdict(int)
        self._series: Dict[str, deque] = defaultdict(lambda: deque(maxlen=HISTOGRAM_WINDOW))
        self._lock = threading.Lock()

    @property
    def shared(self) -> bool:
        return self.redis is not None and self.redis.is_connected

    def increment(self, name: str, value: int = 1, labels: Dict[str, str] = None) -> int:
        key = metric_key(name, labels)
        with self._lock:
            self._counters[key] += value
            current = self._counters[key]

        if self.shared:
            redis_key = f"metrics:counter:{key}"
            self.redis.incr(redis_key, value)
            self.redis.expire(redis_key, RETENTION_SECONDS)
        return current

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        key = metric_key(name, labels)
        if self.shared:
            return self.redis.get_counter(f"metrics:counter:{key}")
        with self._lock:
            return self._counters.get(key, 0)

    def observe(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        key = metric_key(name, labels)
        with self._lock:
            self._series[key].append(value)

        if self.shared:
            redis_key = f"metrics:histogram:{key}"
            self.redis.list_push(redis_key, value)
            self.redis.list_trim(redis_key, -HISTOGRAM_WINDOW, -1)
            self.redis.expire(redis_key, RETENTION_SECONDS)

    def get_histogram_stats(self, name: str, labels: Dict[str, str] = None) -> Dict[str, float]:
        key = metric_key(name, labels)
        if self.shared:
            values = [float(v) for v in self.redis.list_range(f"metrics:histogram:{key}") if v is not None]
        else:
            with self._lock:
                values = list(self._series.get(key, ()))

        ordered = sorted(values)
        return {
            "count": len(ordered),
            "min": ordered[0] if ordered else 0,
            "max": ordered[-1] if ordered else 0,
            "mean": sum(ordered) / len(ordered) if ordered else 0,
            "p50": percentile(ordered, 0.5),
            "p95": percentile(ordered, 0.95),
            "p99": percentile(ordered, 0.99),
        }

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
            self._series.clear()


class HealthChecker:
    def __init__(self):
        self._checks: Dict[str, Callable[[], bool]] = {}

    def register_check(self, name: str, check: Callable[[], bool]) -> None:
        self._checks[name] = check

    def check(self, name: str) -> HealthStatus:
        check = self._checks.get(name)
        if check is None:
            return HealthStatus(name=name, healthy=False, message="unknown check")

        started = time.time()
        try:
            healthy, detail = bool(check()), ""
        except Exception as e:
            healthy, detail = False, str(e)
        return HealthStatus(name=name, healthy=healthy, message=detail,
                            latency_ms=(time.time() - started) * 1000)

    def check_all(self) -> Dict[str, HealthStatus]:
        return {name: self.check(name) for name in self._checks}

    def get_overall_health(self) -> Tuple[bool, Dict[str, HealthStatus]]:
        statuses = self.check_all()
        return all(s.healthy for s in statuses.values()), statuses


class MonitoringDashboard:
    """Recorder cho pipeline + tổng hợp số liệu cho metrics server."""

    def __init__(self, redis_manager=None):
        self.redis = redis_manager
        self.metrics = MetricsCollector(redis_manager)
        self.health = HealthChecker()
        self.start_time = time.time()

        if redis_manager is not None:
            self.health.register_check("redis", self._redis_alive)

    def _redis_alive(self) -> bool:
        client = self.redis.client
        return client is not None and bool(client.ping())

    # ==================== Search ====================

    def record_search(self, query: str, latency_ms: float, result_count: int) -> None:
        self.metrics.increment("searches_total")
        self.metrics.observe("search_latency_ms", latency_ms)
        if result_count == 0:
            self.metrics.increment("searches_empty")
            logger.debug(f"Search without results: '{query[:50]}'")

    def record_superseded_search(self) -> None:
        self.metrics.increment("searches_superseded")

    # ==================== Decision flow ====================

    def record_session_start(self, problem_id: str) -> None:
        self.metrics.increment("sessions_started")
        self.metrics.increment("sessions_by_problem", labels={"problem": problem_id})

    def record_resolution(self, kind: str, found: bool) -> None:
        """kind: "clear" hoặc "unclear"; found=False là một lookup miss."""
        self.metrics.increment("resolutions_by_kind", labels={"kind": kind})
        if not found:
            self.metrics.increment("lookup_misses", labels={"kind": kind})

    def record_stale_rewind(self, problem_id: str) -> None:
        self.metrics.increment("stale_rewinds")
        logger.info(f"Session rewound after option removal on problem {problem_id}")

    def record_script_copy(self) -> None:
        self.metrics.increment("scripts_copied")

    # ==================== Editor ====================

    def record_matrix_mutation(self, operation: str) -> None:
        self.metrics.increment("matrix_mutations")
        self.metrics.increment("matrix_mutations_by_operation", labels={"operation": operation})

    def record_error(self, error_type: str, message: str = "") -> None:
        self.metrics.increment("errors_total")
        self.metrics.increment("errors_by_type", labels={"type": error_type})
        logger.error(f"Recorded error: {error_type} - {message}")

    # ==================== Aggregation ====================

    def get_resolution_distribution(self) -> Dict[str, int]:
        return {
            kind: self.metrics.get_counter("resolutions_by_kind", labels={"kind": kind})
            for kind in RESOLUTION_KINDS
        }

    def get_dashboard_stats(self) -> DashboardStats:
        now = time.time()
        counter = self.metrics.get_counter
        latency = self.metrics.get_histogram_stats("search_latency_ms")
        resolutions = self.get_resolution_distribution()
        misses = sum(counter("lookup_misses", labels={"kind": kind}) for kind in RESOLUTION_KINDS)
        total_resolutions = sum(resolutions.values())
        redis_status = self.health.check("redis") if self.redis is not None else None

        return DashboardStats(
            searches_total=counter("searches_total"),
            searches_superseded=counter("searches_superseded"),
            avg_search_latency_ms=latency["mean"],
            p50_search_latency_ms=latency["p50"],
            p95_search_latency_ms=latency["p95"],
            p99_search_latency_ms=latency["p99"],
            sessions_started=counter("sessions_started"),
            clear_resolutions=resolutions["clear"],
            unclear_resolutions=resolutions["unclear"],
            lookup_misses=misses,
            lookup_miss_rate=misses / total_resolutions if total_resolutions else 0,
            stale_rewinds=counter("stale_rewinds"),
            scripts_copied=counter("scripts_copied"),
            matrix_mutations=counter("matrix_mutations"),
            error_count=counter("errors_total"),
            redis_healthy=redis_status is not None and redis_status.healthy,
            uptime_seconds=now - self.start_time,
            period_end=datetime.fromtimestamp(now).isoformat(),
        )

    def export_metrics(self, format: str = "json") -> str:
        stats = self.get_dashboard_stats()
        if format == "json":
            return json.dumps(asdict(stats), indent=2)
        if format != "prometheus":
            raise ValueError(f"Unsupported metrics format: {format}")

        families = [
            ("searches_total", "counter", "Total number of evaluated searches",
             [("", stats.searches_total)]),
            ("searches_superseded_total", "counter", "Searches cancelled by a newer query",
             [("", stats.searches_superseded)]),
            ("search_latency_ms", "summary", "Search latency in milliseconds", [
                ('{quantile="0.5"}', stats.p50_search_latency_ms),
                ('{quantile="0.95"}', stats.p95_search_latency_ms),
                ('{quantile="0.99"}', stats.p99_search_latency_ms),
            ]),
            ("resolutions_total", "counter", "Resolutions shown to agents", [
                ('{kind="clear"}', stats.clear_resolutions),
                ('{kind="unclear"}', stats.unclear_resolutions),
            ]),
            ("lookup_misses_total", "counter", "Resolutions with no configured mapping",
             [("", stats.lookup_misses)]),
            ("stale_rewinds_total", "counter", "Sessions rewound after an option was removed",
             [("", stats.stale_rewinds)]),
            ("matrix_mutations_total", "counter", "Editor operations on resolution matrices",
             [("", stats.matrix_mutations)]),
            ("errors_total", "counter", "Total number of errors", [("", stats.error_count)]),
        ]
        lines = []
        for name, kind, help_text, samples in families:
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {kind}")
            lines.extend(f"{name}{labels} {value}" for labels, value in samples)
        return "\n".join(lines)


# ==================== Global Instance ====================

_dashboard: Optional[MonitoringDashboard] = None


def get_monitoring_dashboard() -> MonitoringDashboard:
    """In-memory dashboard if init_monitoring() was never called."""
    global _dashboard
    if _dashboard is None:
        _dashboard = MonitoringDashboard()
    return _dashboard


def init_monitoring(redis_manager=None) -> MonitoringDashboard:
    global _dashboard
    _dashboard = MonitoringDashboard(redis_manager=redis_manager)
    return _dashboard
