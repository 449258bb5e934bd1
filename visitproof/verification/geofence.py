"""
Geofence evaluation.

A sample passes iff its reported accuracy is within the fence's cap and
its great-circle distance to the center is within the radius. Both
bounds are inclusive. Invalid samples (NaN, out-of-range coordinates,
negative accuracy) fail; evaluate() never raises.
"""

import math
from typing import Union

from visitproof.core.models import GeoPoint, Geofence, GeofenceResult, LocationSample


EARTH_RADIUS_M = 6_371_000


def haversine_m(a: Union[GeoPoint, LocationSample], b: Union[GeoPoint, LocationSample]) -> float:
    """Great-circle distance in meters."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _sample_is_sane(sample: LocationSample) -> bool:
    try:
        values = (float(sample.lat), float(sample.lng), float(sample.accuracy))
    except (TypeError, ValueError):
        return False
    if any(math.isnan(v) or math.isinf(v) for v in values):
        return False
    lat, lng, accuracy = values
    return -90 <= lat <= 90 and -180 <= lng <= 180 and accuracy >= 0


def evaluate(sample: LocationSample, fence: Geofence) -> GeofenceResult:
    if not _sample_is_sane(sample):
        return GeofenceResult(passed=False, distance_meters=math.inf, accuracy_ok=False)

    distance = haversine_m(sample, fence.center)
    if sample.accuracy > fence.max_accuracy_meters:
        return GeofenceResult(passed=False, distance_meters=distance, accuracy_ok=False)
    return GeofenceResult(passed=distance <= fence.radius_meters, distance_meters=distance)


class GeofenceEvaluator:
    """Object form of evaluate(), for injection alongside the other validators."""

    def evaluate(self, sample: LocationSample, fence: Geofence) -> GeofenceResult:
        return evaluate(sample, fence)
