"""Process metrics in the Prometheus text exposition format."""

from __future__ import annotations

import bisect
import contextlib
import itertools
import logging
import math
import os
import sys
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable, Iterator, Sequence

from .errors import ElectrsError

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
EXPORT_INTERVAL = 5.0


def _format_value(value: float) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "+Inf" if value > 0 else "-Inf"
    return str(value)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(pairs: Sequence[tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape(v)}"' for k, v in pairs) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str) -> None:
        self.name = name
        self.help = help
        self._lock = threading.Lock()

    def _samples(self, labels: Sequence[tuple[str, str]] = ()) -> Iterator[str]:
        raise NotImplementedError


class Counter(_Metric):
    """A monotonically increasing integer counter."""

    kind = "counter"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value = 0

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("counters can only be increased")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        return self._value

    def _samples(self, labels=()):
        yield f"{self.name}{_format_labels(labels)} {_format_value(self._value)}"


class Gauge(_Metric):
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value: float = 0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: float = 1) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def _samples(self, labels=()):
        yield f"{self.name}{_format_labels(labels)} {_format_value(self._value)}"


class Histogram(_Metric):
    """Counts observations into cumulative buckets."""

    kind = "histogram"

    def __init__(
        self, name: str, help: str, buckets: Sequence[float] = DEFAULT_BUCKETS
    ) -> None:
        super().__init__(name, help)
        self.buckets = tuple(sorted(buckets))
        self._counts = [0] * (len(self.buckets) + 1)
        self._sum = 0.0

    def observe(self, value: float) -> None:
        with self._lock:
            self._counts[bisect.bisect_left(self.buckets, value)] += 1
            self._sum += value

    @contextlib.contextmanager
    def time(self) -> Iterator[None]:
        """Observe the wall time spent inside the block, in seconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start)

    @property
    def count(self) -> int:
        return sum(self._counts)

    @property
    def sum(self) -> float:
        return self._sum

    def _samples(self, labels=()):
        labels = list(labels)
        with self._lock:
            counts = list(itertools.accumulate(self._counts))
            total = self._sum
        bounds = [f"{b:g}" for b in self.buckets] + ["+Inf"]
        for bound, count in zip(bounds, counts):
            yield f"{self.name}_bucket{_format_labels(labels + [('le', bound)])} {count}"
        yield f"{self.name}_sum{_format_labels(labels)} {_format_value(total)}"
        yield f"{self.name}_count{_format_labels(labels)} {counts[-1]}"


class MetricVec:
    """A family of metrics of one kind, told apart by label values."""

    def __init__(
        self,
        factory: Callable[[str, str], _Metric],
        name: str,
        help: str,
        label_names: Sequence[str],
    ) -> None:
        self._factory = factory
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._children: dict[tuple[str, ...], _Metric] = {}
        self._lock = threading.Lock()
        self.kind = factory(name, help).kind

    def labels(self, *args):
        if len(args) != len(self.label_names):
            raise ValueError(
                f"expected {len(self.label_names)} label values, got {len(args)}"
            )
        key = tuple(str(arg) for arg in args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._factory(self.name, self.help)
        return child

    def _samples(self, labels=()):
        with self._lock:
            children = sorted(self._children.items())
        for values, child in children:
            yield from child._samples(list(labels) + list(zip(self.label_names, values)))


@dataclass(frozen=True)
class ProcessStats:
    utime: float
    rss: int
    fds: int


def _stats_from_fields(
    parts: Sequence[str], page_size: int, ticks_per_second: float, fds: int
) -> ProcessStats:
    def part(index: int, name: str) -> int:
        try:
            raw = parts[index]
        except IndexError:
            raise ElectrsError(f"missing {name}: {list(parts)!r}") from None
        try:
            value = int(raw)
        except ValueError:
            raise ElectrsError(f"invalid {name}: {list(parts)!r}") from None
        if value < 0:
            raise ElectrsError(f"invalid {name}: {list(parts)!r}")
        return value

    # Field layout as described for /proc/[pid]/stat in proc(5).
    utime = part(13, "utime") / ticks_per_second
    rss = part(23, "rss") * page_size
    return ProcessStats(utime=utime, rss=rss, fds=fds)


def parse_stats() -> ProcessStats:
    """Read CPU time, resident memory and open descriptors of this process."""
    if sys.platform == "darwin":
        return ProcessStats(utime=0.0, rss=0, fds=0)
    try:
        text = Path("/proc/self/stat").read_text()
    except OSError as exc:
        raise ElectrsError("failed to read stats") from exc
    page_size = os.sysconf("SC_PAGE_SIZE")
    ticks_per_second = float(os.sysconf("SC_CLK_TCK"))
    try:
        fds = len(os.listdir("/proc/self/fd"))
    except OSError as exc:
        raise ElectrsError("failed to read fd directory") from exc
    return _stats_from_fields(text.split(), page_size, ticks_per_second, fds)


class Metrics:
    """A registry of metrics served over HTTP."""

    def __init__(self, addr: tuple[str, int]) -> None:
        self.addr = addr
        self._metrics: dict[str, object] = {}
        self._lock = threading.Lock()

    def _register(self, metric):
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric {metric.name!r} is already registered")
            self._metrics[metric.name] = metric
        return metric

    def counter(self, name: str, help: str) -> Counter:
        return self._register(Counter(name, help))

    def counter_vec(self, name: str, help: str, labels: Sequence[str]) -> MetricVec:
        return self._register(MetricVec(Counter, name, help, labels))

    def gauge(self, name: str, help: str) -> Gauge:
        return self._register(Gauge(name, help))

    def gauge_vec(self, name: str, help: str, labels: Sequence[str]) -> MetricVec:
        return self._register(MetricVec(Gauge, name, help, labels))

    def histogram(self, name: str, help: str) -> Histogram:
        return self._register(Histogram(name, help))

    def histogram_vec(self, name: str, help: str, labels: Sequence[str]) -> MetricVec:
        return self._register(MetricVec(Histogram, name, help, labels))

    def render(self) -> str:
        """Return every registered metric in the text exposition format."""
        with self._lock:
            metrics = sorted(self._metrics.items())
        lines = []
        for name, metric in metrics:
            lines.append(f"# HELP {name} {metric.help}")
            lines.append(f"# TYPE {name} {metric.kind}")
            lines.extend(metric._samples())
        return "".join(line + "\n" for line in lines)

    def start(self) -> ThreadingHTTPServer:
        """Serve the metrics over HTTP and start exporting process stats."""
        registry = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                body = registry.render().encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args) -> None:
                logger.debug("metrics http: " + format, *args)

        host, port = self.addr
        try:
            server = ThreadingHTTPServer((host, port), _Handler)
        except OSError as exc:
            raise ElectrsError(
                f"failed to start monitoring HTTP server at {host}:{port}"
            ) from exc
        self._start_process_exporter()
        threading.Thread(
            target=server.serve_forever, name="metrics", daemon=True
        ).start()
        return server

    def _start_process_exporter(self) -> None:
        rss = self.gauge("process_memory_rss", "Resident memory size [bytes]")
        cpu = self.gauge_vec(
            "process_cpu_usage", "CPU usage by this process [seconds]", ["type"]
        )
        fds = self.gauge("process_fs_fds", "# of file descriptors")

        def export() -> None:
            while True:
                try:
                    stats = parse_stats()
                except ElectrsError as exc:
                    logger.warning("failed to export stats: %s", exc)
                else:
                    cpu.labels("utime").set(stats.utime)
                    rss.set(stats.rss)
                    fds.set(stats.fds)
                time.sleep(EXPORT_INTERVAL)

        threading.Thread(target=export, name="exporter", daemon=True).start()