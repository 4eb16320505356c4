# Telemetry Payload Mapping
# File: telemetry_mapper.py

"""
Lenient normalization of inbound transport payloads.

Drones and bridges do not agree on field names, so payloads are accepted
flat ({droneId, lat, lon, ...}) or nested under 'telemetry' / 'location',
with the usual aliases for each field. Invalid payloads are logged and
dropped; they never raise into the transport.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from models import DroneStatus, Telemetry

logger = logging.getLogger(__name__)

NESTED_KEYS = ('telemetry', 'location')


def _to_ms(value: Any) -> Any:
    """Accept epoch milliseconds or an ISO-8601 string"""
    if isinstance(value, str):
        text = value.strip()
        try:
            return float(text)
        except ValueError:
            pass
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return datetime.fromisoformat(text).timestamp() * 1000
    if isinstance(value, datetime):
        return value.timestamp() * 1000
    return value


class TelemetryPayload(BaseModel):
    """Wire shape of one telemetry update"""
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    drone_id: str = Field(validation_alias=AliasChoices('droneId', 'drone_id', 'id'))
    lat: float = Field(validation_alias=AliasChoices('lat', 'latitude'))
    lon: float = Field(validation_alias=AliasChoices('lon', 'lng', 'longitude'))
    altitude: Optional[float] = Field(None, validation_alias=AliasChoices('altitude_m', 'altitude', 'alt'))
    heading: Optional[float] = Field(None, validation_alias=AliasChoices('heading_deg', 'heading'))
    speed: Optional[float] = Field(None, validation_alias=AliasChoices('speed_mps', 'speed'))
    battery: Optional[float] = Field(None, validation_alias=AliasChoices('battery_percent', 'battery'))
    timestamp: Optional[float] = None

    @field_validator('drone_id', mode='before')
    @classmethod
    def coerce_id(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError('drone id is required')
        return str(v)

    @field_validator('lat')
    @classmethod
    def check_lat(cls, v):
        if not math.isfinite(v) or not -90.0 <= v <= 90.0:
            raise ValueError(f'latitude out of range: {v}')
        return v

    @field_validator('lon')
    @classmethod
    def check_lon(cls, v):
        if not math.isfinite(v) or not -180.0 <= v <= 180.0:
            raise ValueError(f'longitude out of range: {v}')
        return v

    @field_validator('altitude', 'heading', 'speed', 'battery')
    @classmethod
    def drop_non_finite(cls, v):
        if v is not None and not math.isfinite(v):
            return None
        return v

    @field_validator('timestamp', mode='before')
    @classmethod
    def parse_timestamp(cls, v):
        if v is None:
            return None
        return _to_ms(v)


class StatusPayload(BaseModel):
    """Wire shape of a status update"""
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    drone_id: str = Field(validation_alias=AliasChoices('droneId', 'drone_id', 'id'))
    status: DroneStatus

    @field_validator('drone_id', mode='before')
    @classmethod
    def coerce_id(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError('drone id is required')
        return str(v)

    @field_validator('status', mode='before')
    @classmethod
    def normalize_status(cls, v):
        if isinstance(v, str):
            return v.strip().lower().replace(' ', '_').replace('-', '_')
        return v


class RosterEntry(BaseModel):
    """One drone of the fleet roster"""
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    drone_id: str = Field(validation_alias=AliasChoices('id', 'droneId', 'drone_id'))
    name: Optional[str] = None
    status: Optional[DroneStatus] = None

    @field_validator('drone_id', mode='before')
    @classmethod
    def coerce_id(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError('drone id is required')
        return str(v)

    @field_validator('status', mode='before')
    @classmethod
    def lenient_status(cls, v):
        if isinstance(v, str):
            v = v.strip().lower().replace(' ', '_').replace('-', '_')
            if v not in DroneStatus._value2member_map_:
                return None
        return v


# ============================================================================
# NORMALIZATION
# ============================================================================

def flatten_payload(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Lift 'telemetry' / 'location' sub-objects to the top level"""
    flat = dict(raw)
    for key in NESTED_KEYS:
        nested = flat.pop(key, None)
        if isinstance(nested, dict):
            for k, v in nested.items():
                flat.setdefault(k, v)
    return flat


def normalize_telemetry(raw: Any, received_at: float) -> Optional[Telemetry]:
    """
    Map one raw payload into a Telemetry snapshot.

    Args:
        raw: Telemetry dict in any supported shape, or a Telemetry
        received_at: Receive time in ms, used when the payload has no timestamp

    Returns:
        Telemetry, or None if the payload is invalid
    """
    if isinstance(raw, Telemetry):
        return raw

    if not isinstance(raw, dict):
        logger.warning(f"Dropping telemetry payload of type {type(raw).__name__}")
        return None

    try:
        payload = TelemetryPayload.model_validate(flatten_payload(raw))
    except (ValidationError, ValueError) as e:
        logger.warning(f"Dropping invalid telemetry payload: {e}")
        return None

    return Telemetry(
        drone_id=payload.drone_id,
        lat=payload.lat,
        lon=payload.lon,
        timestamp=payload.timestamp if payload.timestamp is not None else received_at,
        altitude=payload.altitude,
        heading=payload.heading,
        speed=payload.speed,
        battery=payload.battery,
    )


def normalize_telemetry_batch(raw: Any, received_at: float) -> List[Telemetry]:
    """Map a payload or a list of payloads, dropping the invalid ones"""
    items = raw if isinstance(raw, (list, tuple)) else [raw]
    result = []
    for item in items:
        telemetry = normalize_telemetry(item, received_at)
        if telemetry is not None:
            result.append(telemetry)
    return result


def normalize_status(raw: Any) -> Optional[Tuple[str, DroneStatus]]:
    if not isinstance(raw, dict):
        logger.warning(f"Dropping status payload of type {type(raw).__name__}")
        return None

    try:
        payload = StatusPayload.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Dropping invalid status payload: {e}")
        return None

    return payload.drone_id, payload.status


def normalize_roster(entries: Any) -> List[RosterEntry]:
    """Parse roster entries; entries without an id are skipped"""
    roster = []
    for entry in entries or []:
        if isinstance(entry, RosterEntry):
            roster.append(entry)
            continue
        try:
            roster.append(RosterEntry.model_validate(entry))
        except ValidationError as e:
            logger.warning(f"Skipping roster entry: {e}")
    return roster
