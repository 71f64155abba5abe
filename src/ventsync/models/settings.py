"""The canonical settings record."""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool, field_validator, model_validator

from ventsync._constants import SENSOR_FLAGS, THRESHOLD_RANGE


class GraphRange(enum.StrEnum):
    """History window shown by the dashboards."""

    LIVE = "live"
    MIN_15 = "15m"
    MIN_30 = "30m"
    HOUR_1 = "1h"
    HOUR_6 = "6h"
    DAY_1 = "1d"


class SettingsField(enum.StrEnum):
    """Mutable settings fields as they appear on the wire and in the store row.

    ``max_angle`` is deliberately absent: it is applied, never originated.
    """

    THRESHOLD = "threshold"
    VENT = "vent"
    AUTO = "auto"
    ANGLE = "angle"
    GRAPH_RANGE = "graph_range"
    DHT11_ENABLED = "dht11_enabled"
    WATER_ENABLED = "water_enabled"
    HW416B_ENABLED = "hw416b_enabled"


def clamp_threshold(value: float) -> float:
    low, high = THRESHOLD_RANGE
    return max(low, min(high, value))


class CanonicalSettings(BaseModel):
    """The single logical settings record.

    The store keeps sensor flags as flat ``*_enabled`` columns; validation
    folds them into :attr:`sensor_flags` and :meth:`to_row` flattens them
    back.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        allow_inf_nan=False,
    )

    threshold: float | None = None
    vent: StrictBool | None = None
    auto: StrictBool | None = None
    angle: float | None = None
    max_angle: int | None = None
    graph_range: GraphRange | None = None
    sensor_flags: dict[str, bool] = Field(default_factory=dict)
    updated_at: datetime | None = Field(default=None, validation_alias=AliasChoices("updated_at", "ts"))

    @model_validator(mode="before")
    @classmethod
    def _fold_sensor_columns(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        merged = dict(values)
        flags = dict(merged.get("sensor_flags") or {})
        for flag in SENSOR_FLAGS:
            raw = merged.pop(flag, None)
            if isinstance(raw, bool):
                flags[flag] = raw
        merged["sensor_flags"] = flags
        # Unknown graph ranges from older rows are dropped rather than rejected.
        graph_range = merged.get("graph_range")
        if graph_range is not None and graph_range not in GraphRange._value2member_map_:
            merged.pop("graph_range")
        return merged

    @field_validator("threshold")
    @classmethod
    def _clamp_threshold(cls, value: float | None) -> float | None:
        return None if value is None else clamp_threshold(value)

    @field_validator("max_angle", mode="before")
    @classmethod
    def _normalize_max_angle(cls, value: Any) -> int | None:
        if value is None or isinstance(value, bool):
            return None
        return max(1, round(float(value)))

    @field_validator("updated_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def fields(self) -> dict[str, Any]:
        """Flat ``{SettingsField: value}`` view of the known mutable fields."""
        flat: dict[str, Any] = {
            SettingsField.THRESHOLD: self.threshold,
            SettingsField.VENT: self.vent,
            SettingsField.AUTO: self.auto,
            SettingsField.ANGLE: self.angle,
            SettingsField.GRAPH_RANGE: self.graph_range,
        }
        for flag in SENSOR_FLAGS:
            flat[flag] = self.sensor_flags.get(flag)
        return {str(key): value for key, value in flat.items() if value is not None}

    def merged(self, changes: dict[str, Any], *, updated_at: datetime | None = None) -> CanonicalSettings:
        """Return a copy with flat *changes* applied."""
        data = self.to_row()
        data.update(changes)
        if updated_at is not None:
            data["ts"] = updated_at
        return CanonicalSettings.model_validate(data)

    def to_row(self) -> dict[str, Any]:
        """Flat store-row / wire representation (``None`` fields omitted)."""
        row = self.fields()
        if self.graph_range is not None:
            row[SettingsField.GRAPH_RANGE.value] = self.graph_range.value
        if self.max_angle is not None:
            row["max_angle"] = self.max_angle
        if self.updated_at is not None:
            row["ts"] = self.updated_at
        return row

    def to_payload(self, *, source: str | None = None) -> dict[str, Any]:
        """JSON-ready snapshot for the ``settings`` topics."""
        payload = self.to_row()
        ts = payload.pop("ts", None)
        if isinstance(ts, datetime):
            payload["updated_at"] = ts.isoformat()
        if source is not None:
            payload["source"] = source
        return payload
