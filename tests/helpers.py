import logging

from netatmo_exporter.collector import NetatmoCollector
from netatmo_exporter.models import DashboardData, Device, DeviceCollection

NOW = 1_700_000_000.0

class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

class InlineExecutor:
    """Runs submitted work immediately, so a scrape sees its own refresh."""
    def __init__(self):
        self.calls = 0

    def submit(self, fn, *args, **kwargs):
        self.calls += 1
        fn(*args, **kwargs)

    def shutdown(self, wait=True):
        pass

class RecordingExecutor:
    """Records submitted work without running it."""
    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):
        self.submitted.append((fn, args, kwargs))

    def shutdown(self, wait=True):
        pass

class FakeReader:
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else DeviceCollection()
        self.error = error
        self.calls = 0

    def __call__(self) -> DeviceCollection:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result

def station(name="X", id="70:ee:50:00:00:01", modules=(), **data) -> Device:
    return Device(id=id, module_name=name, linked_modules=tuple(modules), dashboard_data=DashboardData(**data))

def module(name="", id="02:00:00:00:00:01", **data) -> Device:
    return Device(id=id, module_name=name, dashboard_data=DashboardData(**data))

def make_collector(reader, clock=None, executor=None, refresh_interval=60.0, stale_threshold=300.0):
    return NetatmoCollector(
        logging.getLogger("test.collector"),
        reader,
        refresh_interval,
        stale_threshold,
        clock=clock or FakeClock(),
        executor=executor or InlineExecutor(),
    )

def samples(collector) -> dict[tuple, float]:
    """Flatten one scrape into {(name, (module, station)): value}."""
    out: dict[tuple, float] = {}
    for family in collector.collect():
        for s in family.samples:
            key = (s.name, tuple(s.labels[k] for k in ("module", "station") if k in s.labels))
            out[key] = s.value
    return out
