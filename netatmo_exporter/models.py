from dataclasses import dataclass, field
from typing import Any, Optional

def _num(raw: Any) -> Optional[float]:
    # bool is an int subclass but never a reading
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None

def _int(raw: Any) -> Optional[int]:
    value = _num(raw)
    return int(value) if value is not None else None

@dataclass(frozen=True)
class DashboardData:
    """One reading event. Every value is optional; None means the sensor did not report."""
    last_measure: Optional[int] = None  # unix seconds
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    co2: Optional[float] = None
    noise: Optional[float] = None
    pressure: Optional[float] = None
    absolute_pressure: Optional[float] = None
    wind_strength: Optional[float] = None
    wind_angle: Optional[float] = None
    rain: Optional[float] = None
    health_index: Optional[float] = None

    @classmethod
    def from_api(cls, raw: dict[str, Any] | None) -> "DashboardData":
        raw = raw or {}
        return cls(
            last_measure=_int(raw.get("time_utc")),
            temperature=_num(raw.get("Temperature")),
            humidity=_num(raw.get("Humidity")),
            co2=_num(raw.get("CO2")),
            noise=_num(raw.get("Noise")),
            pressure=_num(raw.get("Pressure")),
            absolute_pressure=_num(raw.get("AbsolutePressure")),
            wind_strength=_num(raw.get("WindStrength")),
            wind_angle=_num(raw.get("WindAngle")),
            rain=_num(raw.get("Rain")),
            health_index=_num(raw.get("health_idx")),
        )

@dataclass(frozen=True)
class Device:
    """A station or one of the modules linked to it."""
    id: str
    module_name: str = ""
    battery_percent: Optional[float] = None
    wifi_status: Optional[float] = None  # main unit only
    rf_status: Optional[float] = None  # linked modules only
    linked_modules: tuple["Device", ...] = ()
    dashboard_data: DashboardData = field(default_factory=DashboardData)

    def display_name(self) -> str:
        return self.module_name or f"id-{self.id}"

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> "Device":
        modules = raw.get("modules") or []
        return cls(
            id=str(raw.get("_id", "")),
            module_name=str(raw.get("module_name") or ""),
            battery_percent=_num(raw.get("battery_percent")),
            wifi_status=_num(raw.get("wifi_status")),
            rf_status=_num(raw.get("rf_status")),
            linked_modules=tuple(cls.from_api(m) for m in modules if isinstance(m, dict)),
            dashboard_data=DashboardData.from_api(raw.get("dashboard_data")),
        )

@dataclass(frozen=True)
class DeviceCollection:
    devices: tuple[Device, ...] = ()

    @classmethod
    def from_api(cls, body: dict[str, Any] | None) -> "DeviceCollection":
        """Build from the "body" object of a getstationsdata/gethomecoachsdata response."""
        raw_devices = (body or {}).get("devices") or []
        return cls(devices=tuple(Device.from_api(d) for d in raw_devices if isinstance(d, dict)))

    @classmethod
    def merge(cls, *collections: "DeviceCollection") -> "DeviceCollection":
        devices: list[Device] = []
        for c in collections:
            devices.extend(c.devices)
        return cls(devices=tuple(devices))
