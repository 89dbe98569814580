"""
Entry confidence scoring.

Three independent signals are combined into a 0-100 score:

* GPS proximity to the library center, up to 40 points. Full points inside the
  inner zone, a linear falloff from 40 to 20 across the outer zone, nothing
  beyond it.
* Wi-Fi, 40 points when the reported SSID is the library network.
* Motion, 20 points at walking speed, 0 when moving faster than the threshold,
  10 when the speed is unknown.
"""

import logging
import math
from typing import Optional, Tuple

from presence_engine.config_store import DEFAULT_CONFIG, ConfigStore
from presence_engine.geo import distance_km
from presence_engine.models import ConfidenceBreakdown, ConfidenceDetails, GpsCoordinate, Zone

logger = logging.getLogger(__name__)

GPS_MAX = 40
GPS_OUTER_MIN = 20
WIFI_MAX = 40
MOTION_MAX = 20
MOTION_UNKNOWN = 10


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def gps_score(distance_meters: float, inner: float, outer: float) -> Tuple[int, Zone]:
    if distance_meters <= inner:
        return GPS_MAX, Zone.INNER
    if distance_meters <= outer:
        progress = (distance_meters - inner) / (outer - inner)
        return round_half_up(GPS_MAX - progress * (GPS_MAX - GPS_OUTER_MIN)), Zone.OUTER
    return 0, Zone.OUTSIDE


def wifi_score(wifi_ssid: Optional[str], library_ssid: Optional[str]) -> int:
    if wifi_ssid is not None and wifi_ssid == library_ssid:
        return WIFI_MAX
    return 0


def motion_score(speed_kmh: Optional[float], threshold: float) -> int:
    if speed_kmh is None:
        return MOTION_UNKNOWN
    return MOTION_MAX if speed_kmh < threshold else 0


class ConfidenceScorer:
    """Scores a reported position against the configured geofence."""

    def __init__(self, config: ConfigStore) -> None:
        self.config = config

    def score(self, coordinate: GpsCoordinate, wifi_ssid: Optional[str] = None,
              speed_kmh: Optional[float] = None) -> ConfidenceBreakdown:
        center = self.config.library_center()
        inner, outer = self.config.geofence_zones()
        library_ssid = self.config.get("library_wifi_ssid", DEFAULT_CONFIG["library_wifi_ssid"])
        speed_threshold = self.config.get("motion_speed_threshold", DEFAULT_CONFIG["motion_speed_threshold"])

        meters = distance_km(coordinate, center) * 1000
        gps, zone = gps_score(meters, inner, outer)
        wifi = wifi_score(wifi_ssid, library_ssid)
        motion = motion_score(speed_kmh, speed_threshold)
        total = max(0, min(100, gps + wifi + motion))

        logger.debug(f"Confidence at {meters:.1f}m ({zone.value}): gps={gps} wifi={wifi} motion={motion} total={total}")
        return ConfidenceBreakdown(
            gps=gps,
            wifi=wifi,
            motion=motion,
            total=total,
            details=ConfidenceDetails(distance_meters=round_half_up(meters), zone=zone),
        )
