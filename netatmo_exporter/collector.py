"""
Prometheus collector for Netatmo sensor values.

A scrape never waits for the Netatmo API: when the refresh interval has elapsed
the scrape hands a refresh to a background executor and serves whatever is
cached right now. The refresh result becomes visible to the next scrape.
"""
import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Iterable, NamedTuple, Optional

from prometheus_client.core import GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from .models import DashboardData, Device, DeviceCollection
from .store import SnapshotStore

ReadFunction = Callable[[], DeviceCollection]
Clock = Callable[[], float]

PREFIX = "netatmo_"
SENSOR_PREFIX = PREFIX + "aircare_"
VAR_LABELS = ("module", "station")

class MetricDesc(NamedTuple):
    name: str
    help: str
    labels: tuple[str, ...] = ()

UP = MetricDesc(PREFIX + "up", "Zero if there was an error during the last refresh try.")
REFRESH_INTERVAL = MetricDesc(
    PREFIX + "refresh_interval_seconds",
    "Contains the configured refresh interval in seconds. "
    "This is provided as a convenience for calculations with the cache update time.",
)
REFRESH_TIMESTAMP = MetricDesc(
    PREFIX + "last_refresh_time", "Contains the time of the last refresh try, successful or not."
)
REFRESH_DURATION = MetricDesc(
    PREFIX + "last_refresh_duration_seconds",
    "Contains the time it took for the last refresh to complete, even if it was unsuccessful.",
)
CACHE_TIMESTAMP = MetricDesc(PREFIX + "cache_updated_time", "Contains the time of the cached data.")

HEALTH_METRICS = (UP, REFRESH_INTERVAL, REFRESH_TIMESTAMP, REFRESH_DURATION, CACHE_TIMESTAMP)

UPDATED = MetricDesc(SENSOR_PREFIX + "updated", "Timestamp of last update", VAR_LABELS)

# Per-leaf values in emission order. Battery and signal strength live on the
# device, everything else on its dashboard data.
LeafGetter = Callable[[Device, DashboardData], Optional[float]]
LEAF_METRICS: tuple[tuple[MetricDesc, LeafGetter], ...] = (
    (MetricDesc(SENSOR_PREFIX + "temperature_celsius", "Temperature measurement in celsius", VAR_LABELS),
     lambda dev, data: data.temperature),
    (MetricDesc(SENSOR_PREFIX + "humidity_percent", "Relative humidity measurement in percent", VAR_LABELS),
     lambda dev, data: data.humidity),
    (MetricDesc(SENSOR_PREFIX + "co2_ppm", "Carbondioxide measurement in parts per million", VAR_LABELS),
     lambda dev, data: data.co2),
    (MetricDesc(SENSOR_PREFIX + "noise_db", "Noise measurement in decibels", VAR_LABELS),
     lambda dev, data: data.noise),
    (MetricDesc(SENSOR_PREFIX + "pressure_mb", "Atmospheric pressure measurement in millibar", VAR_LABELS),
     lambda dev, data: data.pressure),
    (MetricDesc(SENSOR_PREFIX + "wind_strength_kph", "Wind strength in kilometers per hour", VAR_LABELS),
     lambda dev, data: data.wind_strength),
    (MetricDesc(SENSOR_PREFIX + "wind_direction_degrees", "Wind direction in degrees", VAR_LABELS),
     lambda dev, data: data.wind_angle),
    (MetricDesc(SENSOR_PREFIX + "rain_amount_mm", "Rain amount in millimeters", VAR_LABELS),
     lambda dev, data: data.rain),
    (MetricDesc(SENSOR_PREFIX + "battery_percent", "Battery remaining life (10: low)", VAR_LABELS),
     lambda dev, data: dev.battery_percent),
    (MetricDesc(SENSOR_PREFIX + "wifi_signal_strength", "Wifi signal strength (86: bad, 71: avg, 56: good)", VAR_LABELS),
     lambda dev, data: dev.wifi_status),
    (MetricDesc(SENSOR_PREFIX + "rf_signal_strength", "RF signal strength (90: lowest, 60: highest)", VAR_LABELS),
     lambda dev, data: dev.rf_status),
    (MetricDesc(SENSOR_PREFIX + "health_index", "Health index: 0 = Healthy,1 = Fine,2 = Fair,3 = Poor,4 = Unhealthy", VAR_LABELS),
     lambda dev, data: data.health_index),
    (MetricDesc(SENSOR_PREFIX + "absolute_pressure", "Absolute pressure", VAR_LABELS),
     lambda dev, data: data.absolute_pressure),
)

SENSOR_METRICS = (UPDATED,) + tuple(desc for desc, _ in LEAF_METRICS)

def _family(desc: MetricDesc) -> GaugeMetricFamily:
    return GaugeMetricFamily(desc.name, desc.help, labels=list(desc.labels))

@dataclass(frozen=True)
class RefreshStatus:
    """Outcome of the most recent refresh try. Replaced as a whole, never mutated."""
    last_attempt: float | None = None
    last_error: BaseException | None = None
    last_duration: float = 0.0

class NetatmoCollector(Collector):
    def __init__(
        self,
        log: logging.Logger,
        read_function: ReadFunction,
        refresh_interval: float,
        stale_threshold: float,
        clock: Clock = time.time,
        executor: Executor | None = None,
    ):
        self.log = log
        self.read_function = read_function
        self.refresh_interval = refresh_interval
        self.stale_threshold = stale_threshold
        self.clock = clock
        self.store = SnapshotStore()
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="netatmo-refresh")
        self._status_lock = threading.Lock()
        self._status = RefreshStatus()

    @property
    def status(self) -> RefreshStatus:
        with self._status_lock:
            return self._status

    def _update_status(self, **changes) -> None:
        with self._status_lock:
            self._status = replace(self._status, **changes)

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # Trigger
    def should_refresh(self, now: float) -> bool:
        last = self.status.last_attempt
        return last is None or now - last >= self.refresh_interval

    def trigger_refresh(self, now: float) -> None:
        # fire and forget; overlapping refreshes are allowed, last writer wins.
        # The attempt counts from submission so a busy pool does not queue a
        # fetch on every scrape.
        last = self.status.last_attempt
        self.log.debug(
            "Refreshing data. Time since last refresh: %s",
            "never refreshed" if last is None else f"{now - last:.3f}s",
        )
        self._update_status(last_attempt=now)
        self._executor.submit(self.refresh_data, now)

    # Executor
    def refresh_data(self, now: float) -> None:
        """Try to refresh the cached data. Failures are recorded, never raised."""
        self._update_status(last_attempt=now)

        start = self.clock()
        error: BaseException | None = None
        devices: DeviceCollection | None = None
        try:
            devices = self.read_function()
        except Exception as e:
            error = e
        duration = self.clock() - start
        self._update_status(last_error=error, last_duration=duration)

        if error is not None:
            self.log.error(
                "Error during refresh: %s",
                error,
                extra={"event": "refresh.error", "extra_fields": {"error": repr(error), "duration_s": duration}},
            )
            return

        self.store.write(devices, now)
        self.log.info(
            "refresh",
            extra={
                "event": "refresh.done",
                "extra_fields": {"devices": len(devices.devices), "duration_s": duration},
            },
        )

    # Emitter
    def describe(self) -> Iterable[Metric]:
        for desc in HEALTH_METRICS + SENSOR_METRICS:
            yield _family(desc)

    def collect(self) -> Iterable[Metric]:
        now = self.clock()
        if self.should_refresh(now):
            self.trigger_refresh(now)

        status = self.status
        snapshot, cache_ts = self.store.read()

        up = 1.0 if cache_ts is not None and status.last_error is None else 0.0
        health_values = (
            up,
            self.refresh_interval,
            _unix(status.last_attempt),
            status.last_duration,
            _unix(cache_ts),
        )
        for desc, value in zip(HEALTH_METRICS, health_values):
            family = _family(desc)
            self._send_metric(family, desc, value)
            yield family

        if snapshot is None:
            return

        families = {desc.name: _family(desc) for desc in SENSOR_METRICS}
        for dev in snapshot.devices:
            station_name = dev.display_name()
            self._collect_data(families, dev, station_name, now)
            for module in dev.linked_modules:
                self._collect_data(families, module, station_name, now)

        for desc in SENSOR_METRICS:
            family = families[desc.name]
            if family.samples:
                yield family

    def _collect_data(self, families: dict[str, GaugeMetricFamily], device: Device, station_name: str, now: float) -> None:
        module_name = device.display_name()
        data = device.dashboard_data

        if data.last_measure is None:
            self.log.debug("No data available for %s.", module_name)
            return

        age = now - data.last_measure
        if age > self.stale_threshold:
            self.log.debug("Data is stale for %s: %.0fs > %.0fs", module_name, age, self.stale_threshold)
            return

        self._send_metric(families[UPDATED.name], UPDATED, data.last_measure, module_name, station_name)
        for desc, getter in LEAF_METRICS:
            value = getter(device, data)
            if value is not None:
                self._send_metric(families[desc.name], desc, value, module_name, station_name)

    def _send_metric(self, family: GaugeMetricFamily, desc: MetricDesc, value, *label_values) -> None:
        try:
            if len(label_values) != len(desc.labels):
                raise ValueError(f"expected {len(desc.labels)} label values, got {len(label_values)}")
            for v in label_values:
                if not isinstance(v, str):
                    raise TypeError(f"label value {v!r} is not a string")
            family.add_metric(list(label_values), float(value))
        except (TypeError, ValueError) as e:
            self.log.error("Error creating %s metric: %s", desc.name, e)

def _unix(ts: float | None) -> float:
    if ts is None:
        return 0.0
    return float(int(ts))
