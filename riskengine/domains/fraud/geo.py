"""Geospatial primitives: haversine distance, impossible travel, DBSCAN clustering."""

import math

from .config import ConfigProvider, GeoConfig
from .models import (
    Cluster,
    ClusterDistance,
    ClusterResult,
    GeoPoint,
    TravelCheck,
)


EARTH_RADIUS_KM = 6371.0

NOISE = 0
_UNVISITED = -1


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in km between two lat/lon points."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)
    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    # Rounding can push a slightly above 1 for antipodal points
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, max(0.0, a))))


def is_impossible_travel(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
    time_diff_seconds: float,
    max_speed_kmh: float = 900.0,
) -> TravelCheck:
    distance = haversine_distance(lat1, lon1, lat2, lon2)

    if time_diff_seconds <= 0:
        # Simultaneous sightings are only possible at (almost) the same place
        return TravelCheck(
            impossible=distance > 1.0,
            distance_km=round(distance, 2),
            required_speed_kmh=math.inf,
            max_speed_kmh=max_speed_kmh,
        )

    speed = distance / (time_diff_seconds / 3600)
    return TravelCheck(
        impossible=speed > max_speed_kmh,
        distance_km=round(distance, 2),
        required_speed_kmh=round(speed, 2),
        max_speed_kmh=max_speed_kmh,
    )


def _region_query(points: list[GeoPoint], index: int, eps_km: float) -> list[int]:
    origin = points[index]
    return [
        i
        for i, p in enumerate(points)
        if haversine_distance(origin.lat, origin.lon, p.lat, p.lon) <= eps_km
    ]


def _centroid(points: list[GeoPoint]) -> GeoPoint:
    return GeoPoint(
        lat=sum(p.lat for p in points) / len(points),
        lon=sum(p.lon for p in points) / len(points),
    )


def cluster_locations(
    points: list[GeoPoint],
    eps_km: float = 50.0,
    min_points: int = 3,
) -> ClusterResult:
    """DBSCAN over haversine distance.

    Labels are 1-based cluster ids, ``0`` marks noise. A point first marked
    as noise is relabelled when a later cluster expansion reaches it.
    Output is deterministic for a given input order.
    """
    if not points:
        return ClusterResult()

    labels = [_UNVISITED] * len(points)
    cluster_id = 0

    for i in range(len(points)):
        if labels[i] != _UNVISITED:
            continue

        neighbors = _region_query(points, i, eps_km)
        if len(neighbors) < min_points:
            labels[i] = NOISE
            continue

        cluster_id += 1
        labels[i] = cluster_id
        queue = [n for n in neighbors if n != i]
        while queue:
            j = queue.pop(0)
            if labels[j] == NOISE:
                # Border point
                labels[j] = cluster_id
            if labels[j] != _UNVISITED:
                continue
            labels[j] = cluster_id
            j_neighbors = _region_query(points, j, eps_km)
            if len(j_neighbors) >= min_points:
                queue.extend(n for n in j_neighbors if labels[n] in (_UNVISITED, NOISE))

    clusters = []
    for cid in range(1, cluster_id + 1):
        members = [p for p, label in zip(points, labels, strict=True) if label == cid]
        clusters.append(Cluster(id=cid, points=members, centroid=_centroid(members)))

    return ClusterResult(
        clusters=clusters,
        noise=[p for p, label in zip(points, labels, strict=True) if label == NOISE],
        cluster_count=cluster_id,
        labels=labels,
    )


def distance_to_nearest_cluster(
    lat: float,
    lon: float,
    clusters: list[Cluster],
    max_cluster_distance_km: float = 500.0,
) -> ClusterDistance:
    if not clusters:
        return ClusterDistance(distance_km=math.inf, nearest_cluster_id=None, outside_cluster=True)

    nearest_id: int | None = None
    nearest = math.inf
    for cluster in clusters:
        d = haversine_distance(lat, lon, cluster.centroid.lat, cluster.centroid.lon)
        if d < nearest:
            nearest, nearest_id = d, cluster.id

    return ClusterDistance(
        distance_km=round(nearest, 2),
        nearest_cluster_id=nearest_id,
        outside_cluster=nearest > max_cluster_distance_km,
    )


class GeoMathService:
    """Geo primitives bound to the live ``GeoConfig``."""

    def __init__(self, provider: ConfigProvider | None = None) -> None:
        self._provider = provider or ConfigProvider()

    @property
    def _config(self) -> GeoConfig:
        return self._provider.current.geo

    def haversine_distance(self, lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        return haversine_distance(lat1, lon1, lat2, lon2)

    def is_impossible_travel(
        self, lat1: float, lon1: float, lat2: float, lon2: float, time_diff_seconds: float
    ) -> TravelCheck:
        return is_impossible_travel(
            lat1, lon1, lat2, lon2, time_diff_seconds, max_speed_kmh=self._config.max_speed_kmh
        )

    def cluster_locations(self, points: list[GeoPoint]) -> ClusterResult:
        cfg = self._config
        bounded = points[-cfg.max_history_points :] if cfg.max_history_points else points
        return cluster_locations(
            bounded, eps_km=cfg.cluster_eps_km, min_points=cfg.cluster_min_points
        )

    def distance_to_nearest_cluster(
        self, lat: float, lon: float, clusters: list[Cluster]
    ) -> ClusterDistance:
        return distance_to_nearest_cluster(
            lat, lon, clusters, max_cluster_distance_km=self._config.max_cluster_distance_km
        )
