"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script consists of a series of functions dedicated to convert geographic coordinates (e.g. GPS fixes)
to the metric cartesian frames in which motion priors are expressed
"""

import numpy as np
import pyproj
import utm


class Error(Exception):
    pass


GPS_TO_XYZ_METHODS = ["ecef", "utm"]


def utm_zone_number_from_latlon(lat, lon):
    return int(utm.latlon_to_zone_number(lat, lon))


def utm_from_latlon(lats, lons, zone_number=None):
    """
    convert lat-lon to utm
    the zone of the first point is used for all points unless zone_number is specified
    """
    lats, lons = np.atleast_1d(lats), np.atleast_1d(lons)
    n = utm_zone_number_from_latlon(lats[0], lons[0]) if zone_number is None else zone_number
    proj_dst = pyproj.Proj("+proj=utm +zone={} +ellps=WGS84 {}".format(n, "+south" if lats[0] < 0 else ""))
    easts, norths = proj_dst(lons, lats)
    return np.asarray(easts), np.asarray(norths)


def latlon_to_ecef_custom(lat, lon, alt):
    """
    convert from geodetic (lat, lon, alt) to geocentric coordinates (x, y, z)
    """
    rad_lat = lat * (np.pi / 180.0)
    rad_lon = lon * (np.pi / 180.0)
    a = 6378137.0
    finv = 298.257223563
    f = 1 / finv
    e2 = 1 - (1 - f) * (1 - f)
    v = a / np.sqrt(1 - e2 * np.sin(rad_lat) * np.sin(rad_lat))

    x = (v + alt) * np.cos(rad_lat) * np.cos(rad_lon)
    y = (v + alt) * np.cos(rad_lat) * np.sin(rad_lon)
    z = (v * (1 - e2) + alt) * np.sin(rad_lat)
    return x, y, z


def lla_to_xyz(lats, lons, alts, method="ecef"):
    """
    Converts geodetic coordinates to a metric cartesian frame

    Args:
        lats, lons, alts: N valued vectors with latitude and longitude (degrees) and altitude (meters)
        method (optional): "ecef" for geocentric coordinates, "utm" for (east, north, altitude)

    Returns:
        xyz: Nx3 array with the cartesian coordinates of each point
    """
    lats, lons, alts = np.atleast_1d(lats), np.atleast_1d(lons), np.atleast_1d(alts)
    if method == "ecef":
        x, y, z = latlon_to_ecef_custom(lats, lons, alts)
    elif method == "utm":
        x, y = utm_from_latlon(lats, lons)
        z = alts
    else:
        raise Error("{} is not a valid gps_to_xyz_method, use one of {}".format(method, GPS_TO_XYZ_METHODS))
    return np.vstack((x, y, z)).T.astype(np.float64)
