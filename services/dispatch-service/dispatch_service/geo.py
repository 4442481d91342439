import math

from .schemas import BoundingBox, Coordinates, GeofenceRegion

EARTH_RADIUS_KM = 6371.0
KM_PER_DEG_LAT = 111.0


def is_valid(c: Coordinates) -> bool:
    """Range check; (0, 0) is the "unknown" sentinel and never a real fix."""
    if c is None:
        return False
    if not (math.isfinite(c.lat) and math.isfinite(c.lng)):
        return False
    if c.lat == 0 and c.lng == 0:
        return False
    return -90 <= c.lat <= 90 and -180 <= c.lng <= 180


def distance_km(a: Coordinates, b: Coordinates) -> float:
    if a.lat == b.lat and a.lng == b.lng:
        return 0.0

    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.lng - a.lng)

    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1)
        * math.cos(lat2)
        * math.sin(d_lon / 2) ** 2
    )
    # float noise can push h a hair past 1 for antipodal points
    h = min(1.0, h)

    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def is_within(point: Coordinates, region: GeofenceRegion) -> bool:
    if not region.enabled:
        return False
    return distance_km(point, region.center) * 1000 <= region.radius_m


def km_to_deg_lat(km: float) -> float:
    return km / KM_PER_DEG_LAT


def km_to_deg_lon(km: float, lat: float) -> float:
    """
    Widest longitude offset reached by a circle of radius km centred at lat.
    Returns 180 when the circle covers a pole.
    """
    angular = math.radians(km_to_deg_lat(km))
    c = math.cos(math.radians(lat))
    if c <= 0 or math.sin(angular) >= c:
        return 180.0
    return math.degrees(math.asin(math.sin(angular) / c))


def bounding_box(center: Coordinates, radius_km: float) -> BoundingBox:
    """
    Conservative box around a circle of radius_km.
    Latitude is clamped to the poles and a circle reaching a pole spans every
    longitude. Otherwise longitude spans are not wrapped, so a box crossing
    the antimeridian simply extends past +/-180.
    """
    d_lat = km_to_deg_lat(radius_km)
    north = center.lat + d_lat
    south = center.lat - d_lat
    d_lon = km_to_deg_lon(radius_km, center.lat)

    if north >= 90 or south <= -90 or d_lon >= 180:
        return BoundingBox(
            northeast=Coordinates(lat=min(90.0, north), lng=180.0),
            southwest=Coordinates(lat=max(-90.0, south), lng=-180.0),
        )

    return BoundingBox(
        northeast=Coordinates(lat=north, lng=center.lng + d_lon),
        southwest=Coordinates(lat=south, lng=center.lng - d_lon),
    )


def box_contains(box: BoundingBox, point: Coordinates) -> bool:
    if not (box.southwest.lat <= point.lat <= box.northeast.lat):
        return False

    lng = point.lng
    if box.southwest.lng <= lng <= box.northeast.lng:
        return True
    # try the wrapped longitude for boxes spilling over the antimeridian
    wrapped = lng + 360 if lng < 0 else lng - 360
    return box.southwest.lng <= wrapped <= box.northeast.lng
