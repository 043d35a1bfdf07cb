"""GPS trace parsing: GPX (Lockito, Strava), KML (Google Maps), Google Takeout JSON."""

import json
import xml.etree.ElementTree as ET
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel

from lumi.tester.errors import FlowConfigError
from lumi.tester.utils.geo import haversine_distance


class GpsPoint(BaseModel):
    lat: float
    lon: float
    altitude: float | None = None
    timestamp: datetime | None = None
    speed: float | None = None  # m/s


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_timestamp(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_xml(content: str, kind: str) -> ET.Element:
    try:
        return ET.fromstring(content)
    except ET.ParseError as e:
        raise FlowConfigError(f"{kind} parse error: {e}") from e


def calculate_speeds(points: list[GpsPoint]) -> None:
    """Fill `speed` from consecutive timestamps where both are present."""
    for previous, current in zip(points, points[1:], strict=False):
        if previous.timestamp is None or current.timestamp is None:
            continue
        seconds = (current.timestamp - previous.timestamp).total_seconds()
        if seconds > 0:
            distance = haversine_distance(previous.lat, previous.lon, current.lat, current.lon)
            current.speed = distance / seconds


def parse_gpx(content: str) -> list[GpsPoint]:
    root = _parse_xml(content, "GPX")
    points = []
    for node in root.iter():
        if _local_name(node.tag) not in ("trkpt", "wpt"):
            continue
        point = GpsPoint(lat=float(node.get("lat", 0.0)), lon=float(node.get("lon", 0.0)))
        for child in node:
            name = _local_name(child.tag)
            text = (child.text or "").strip()
            if name == "ele":
                try:
                    point.altitude = float(text)
                except ValueError:
                    pass
            elif name == "time":
                point.timestamp = _parse_timestamp(text)
        points.append(point)

    if not points:
        raise FlowConfigError("No GPS points found in GPX file")
    calculate_speeds(points)
    return points


def parse_kml(content: str) -> list[GpsPoint]:
    """KML lists `lon,lat[,alt]` tuples separated by whitespace."""
    root = _parse_xml(content, "KML")
    points = []
    for node in root.iter():
        if _local_name(node.tag) != "coordinates" or not node.text:
            continue
        for chunk in node.text.split():
            parts = chunk.split(",")
            if len(parts) < 2:
                continue
            try:
                lon, lat = float(parts[0]), float(parts[1])
            except ValueError:
                continue
            altitude = None
            if len(parts) > 2:
                try:
                    altitude = float(parts[2])
                except ValueError:
                    pass
            points.append(GpsPoint(lat=lat, lon=lon, altitude=altitude))

    if not points:
        raise FlowConfigError("No GPS points found in KML file")
    return points


def parse_google_json(content: str) -> list[GpsPoint]:
    """Google Takeout `Records.json` (E7 integers) or `Timeline.json` (`geo:lat,lon`)."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise FlowConfigError(f"Invalid JSON format: {e}") from e

    points: list[GpsPoint] = []
    for location in data.get("locations") or []:
        lat_e7 = location.get("latitudeE7")
        lon_e7 = location.get("longitudeE7")
        if not isinstance(lat_e7, int) or not isinstance(lon_e7, int):
            continue
        point = GpsPoint(lat=lat_e7 / 1e7, lon=lon_e7 / 1e7)
        timestamp_ms = location.get("timestampMs")
        if isinstance(timestamp_ms, str) and timestamp_ms.isdigit():
            point.timestamp = datetime.fromtimestamp(int(timestamp_ms) / 1000, tz=UTC)
        if isinstance(location.get("altitude"), int | float):
            point.altitude = float(location["altitude"])
        points.append(point)

    if not points:
        for segment in data.get("semanticSegments") or []:
            for entry in segment.get("timelinePath") or []:
                value = entry.get("point", "")
                if not value.startswith("geo:"):
                    continue
                parts = value.removeprefix("geo:").split(",")
                if len(parts) >= 2:
                    points.append(GpsPoint(lat=float(parts[0]), lon=float(parts[1])))

    if not points:
        raise FlowConfigError("No GPS points found in JSON file")
    calculate_speeds(points)
    return points


def parse_gps_content(content: str, extension: str) -> list[GpsPoint]:
    parsers = {"gpx": parse_gpx, "kml": parse_kml, "json": parse_google_json}
    parser = parsers.get(extension.lower().lstrip("."))
    if parser is None:
        raise FlowConfigError(f"Unsupported GPS file format: {extension}")
    return parser(content)


def parse_gps_file(path: Path) -> list[GpsPoint]:
    return parse_gps_content(path.read_text(encoding="utf-8"), path.suffix)
