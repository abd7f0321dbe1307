"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import settings

EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class Geofence:
    center: GeoPoint
    radius_m: float
    strict_mode: bool
    allowed_variance_m: float

    @property
    def effective_radius_m(self) -> float:
        return self.radius_m + self.allowed_variance_m

    def to_dict(self) -> Dict[str, Any]:
        return {
            "center": {"latitude": self.center.lat, "longitude": self.center.lng},
            "radius": self.radius_m,
            "strictMode": self.strict_mode,
            "allowedVariance": self.allowed_variance_m,
        }


@dataclass(frozen=True)
class GeofenceResult:
    distance_m: float
    inside: bool
    enforced: bool
    is_risk: bool

    @property
    def can_proceed(self) -> bool:
        return self.inside or not self.enforced

    @property
    def message(self) -> str:
        if self.inside:
            return "Inside project geofence"
        if not self.enforced:
            return f"Outside project geofence by {self.distance_m:.0f} m (not enforced)"
        return f"Outside project geofence ({self.distance_m:.0f} m from site)"


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # Floating-point overshoot near antipodes can push a past 1
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def resolve_geofence(project) -> Geofence:
    """
    Resolve a project's geofence from its stored configuration.

    Precedence, per field:
      1. ``project.geofence`` JSON ({center: {latitude, longitude}, radius,
         strictMode, allowedVariance})
      2. legacy columns ``project.lat``, ``project.lng``,
         ``project.geofence_radius_m``
      3. settings defaults; the center defaults to (0, 0)

    A radius that is missing or not positive falls through to the next
    source. Never raises on partially configured projects.
    """
    config = (getattr(project, "geofence", None) or {}) if project is not None else {}
    if not isinstance(config, dict):
        config = {}
    center = config.get("center") or {}
    if not isinstance(center, dict):
        center = {}

    lat = _as_float(center.get("latitude"))
    if lat is None:
        lat = _as_float(getattr(project, "lat", None))
    lng = _as_float(center.get("longitude"))
    if lng is None:
        lng = _as_float(getattr(project, "lng", None))

    radius = None
    for candidate in (config.get("radius"), getattr(project, "geofence_radius_m", None)):
        value = _as_float(candidate)
        if value is not None and value > 0:
            radius = value
            break
    if radius is None:
        radius = float(settings.geofence_radius_m_default)

    variance = _as_float(config.get("allowedVariance"))
    if variance is None or variance < 0:
        variance = float(settings.geofence_variance_m_default)

    strict = config.get("strictMode")
    strict_mode = settings.geofence_strict_default if strict is None else strict is not False

    return Geofence(
        center=GeoPoint(lat=lat or 0.0, lng=lng or 0.0),
        radius_m=radius,
        strict_mode=strict_mode,
        allowed_variance_m=variance,
    )


def is_inside(point: GeoPoint, geofence: Geofence) -> bool:
    distance = haversine_distance(point.lat, point.lng, geofence.center.lat, geofence.center.lng)
    return distance <= geofence.effective_radius_m


def evaluate(point: GeoPoint, geofence: Geofence, accuracy_m: Optional[float] = None) -> GeofenceResult:
    """
    Evaluate a point against a geofence.

    ``inside`` is always computed and recorded, even when the geofence is
    not strict; ``enforced`` tells callers whether it gates anything.
    """
    distance = haversine_distance(point.lat, point.lng, geofence.center.lat, geofence.center.lng)
    return GeofenceResult(
        distance_m=distance,
        inside=distance <= geofence.effective_radius_m,
        enforced=geofence.strict_mode,
        is_risk=accuracy_m is not None and accuracy_m > settings.gps_accuracy_risk_m,
    )
