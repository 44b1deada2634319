import math
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable

from gsmtower.schemas.point import Location, Point, PointDetails, PointFilter, PointPermission
from gsmtower.utils.logging import get_logger

logger = get_logger(__name__)

MEMORY = ":memory:"
METERS_PER_DEGREE = 111_000.0
# keeps the longitude span finite close to the poles
MIN_LONGITUDE_SCALE = 0.01

SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS points USING rtree(
    id,
    minLat, maxLat,
    minLon, maxLon
);

CREATE TABLE IF NOT EXISTS point_details (
    id INTEGER PRIMARY KEY,
    station_id TEXT NOT NULL,
    city TEXT,
    location TEXT,
    teryt TEXT,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS permissions (
    id INTEGER PRIMARY KEY,
    point_id INTEGER NOT NULL REFERENCES point_details(id) ON DELETE CASCADE,
    operator_name TEXT NOT NULL,
    decision_number TEXT NOT NULL,
    decision_type TEXT,
    expiry_date INTEGER,
    technology TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_point_station ON point_details(station_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_perm_unique ON permissions(point_id, technology, operator_name);
CREATE INDEX IF NOT EXISTS idx_perm_tech ON permissions(technology);
CREATE INDEX IF NOT EXISTS idx_perm_oper ON permissions(operator_name);
"""

SELECT_POINTS = """
SELECT
    points.id AS point_id,
    point_details.city, point_details.location, point_details.station_id, point_details.teryt,
    point_details.latitude, point_details.longitude,
    permissions.operator_name, permissions.decision_number, permissions.decision_type,
    permissions.expiry_date, permissions.technology
FROM points
JOIN point_details ON points.id = point_details.id
JOIN permissions ON permissions.point_id = point_details.id
"""


def bounding_box(center: Location, radius_meters: float) -> tuple[float, float, float, float]:
    """Return ``(min_lat, max_lat, min_lon, max_lon)`` around ``center``.

    One degree of latitude is taken as 111 km; the longitude span is widened
    by ``1 / cos(latitude)``.
    """
    lat_delta = radius_meters / METERS_PER_DEGREE
    scale = max(math.cos(math.radians(center.latitude)), MIN_LONGITUDE_SCALE)
    lon_delta = radius_meters / (METERS_PER_DEGREE * scale)
    return (
        center.latitude - lat_delta,
        center.latitude + lat_delta,
        center.longitude - lon_delta,
        center.longitude + lon_delta,
    )


def _filter_conditions(point_filter: PointFilter | None) -> tuple[list[str], list[Any]]:
    conditions: list[str] = []
    arguments: list[Any] = []
    if point_filter is None or point_filter.is_empty:
        return conditions, arguments
    if point_filter.technologies:
        values = sorted(point_filter.technologies)
        conditions.append(f"permissions.technology IN ({', '.join('?' for _ in values)})")
        arguments.extend(values)
    if point_filter.operator_names:
        values = sorted(point_filter.operator_names)
        conditions.append(f"permissions.operator_name IN ({', '.join('?' for _ in values)})")
        arguments.extend(values)
    return conditions, arguments


def _group_rows(rows: Iterable[sqlite3.Row]) -> list[Point]:
    grouped: dict[int, Point] = {}
    for row in rows:
        permission = PointPermission(
            operator_name=row["operator_name"],
            decision_number=row["decision_number"],
            decision_type=row["decision_type"],
            expiry_date=row["expiry_date"],
            technology=row["technology"],
        )
        point = grouped.get(row["point_id"])
        if point is None:
            grouped[row["point_id"]] = Point(
                longitude=row["longitude"],
                latitude=row["latitude"],
                details=PointDetails(
                    city=row["city"],
                    location=row["location"],
                    station_id=row["station_id"],
                    teryt=row["teryt"],
                ),
                permissions=[permission],
            )
        elif permission not in point.permissions:
            point.permissions.append(permission)
    return list(grouped.values())


class SpatialStore:
    """SQLite store of stations: an R*Tree of degenerate boxes plus detail and permission tables.

    One connection is shared by every caller and serialized with a lock, so
    exactly one writer is active at a time.
    """

    def __init__(self, db_path: Path | str = MEMORY) -> None:
        self.db_path = str(db_path)
        if self.db_path != MEMORY:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        if self.db_path != MEMORY:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.executescript(SCHEMA)

    def __enter__(self) -> "SpatialStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def save(self, points: Iterable[Point]) -> None:
        with self._lock, self._conn:
            written = 0
            for point in points:
                self._write_point(point)
                written += 1
        logger.debug("Saved %d points", written)

    def _write_point(self, point: Point) -> None:
        details = point.details
        inserted = self._conn.execute(
            """
            INSERT INTO point_details (station_id, city, location, teryt, latitude, longitude)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(station_id) DO NOTHING
            """,
            (details.station_id, details.city, details.location, details.teryt, point.latitude, point.longitude),
        ).rowcount
        point_id = self._conn.execute(
            "SELECT id FROM point_details WHERE station_id = ?", (details.station_id,)
        ).fetchone()["id"]

        # an existing station keeps its first box
        if inserted:
            self._conn.execute(
                "INSERT INTO points (id, minLat, maxLat, minLon, maxLon) VALUES (?, ?, ?, ?, ?)",
                (point_id, point.latitude, point.latitude, point.longitude, point.longitude),
            )
        self._conn.executemany(
            """
            INSERT OR IGNORE INTO permissions
                (point_id, operator_name, decision_number, decision_type, expiry_date, technology)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    point_id,
                    permission.operator_name,
                    permission.decision_number,
                    permission.decision_type,
                    permission.expiry_date,
                    permission.technology,
                )
                for permission in point.permissions
            ],
        )

    def delete_all(self) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM permissions")
            self._conn.execute("DELETE FROM point_details")
            self._conn.execute("DELETE FROM points")

    def find_points(
        self,
        near: Location,
        radius_meters: float,
        point_filter: PointFilter | None = None,
    ) -> list[Point]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(near, radius_meters)
        conditions = [
            "points.maxLat >= ?",
            "points.minLat <= ?",
            "points.maxLon >= ?",
            "points.minLon <= ?",
        ]
        arguments: list[Any] = [min_lat, max_lat, min_lon, max_lon]
        filter_conditions, filter_arguments = _filter_conditions(point_filter)
        return self._query(conditions + filter_conditions, arguments + filter_arguments)

    def get_all_points(self, point_filter: PointFilter | None = None) -> list[Point]:
        conditions, arguments = _filter_conditions(point_filter)
        return self._query(conditions, arguments)

    def _query(self, conditions: list[str], arguments: list[Any]) -> list[Point]:
        sql = SELECT_POINTS
        if conditions:
            sql += "WHERE " + " AND ".join(conditions) + "\n"
        sql += "ORDER BY points.id, permissions.id"
        with self._lock:
            rows = self._conn.execute(sql, arguments).fetchall()
        return _group_rows(rows)

    def get_all_technologies(self) -> list[str]:
        return self._distinct("technology")

    def get_all_operator_names(self) -> list[str]:
        return self._distinct("operator_name")

    def _distinct(self, column: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT DISTINCT {column} FROM permissions WHERE {column} IS NOT NULL
                ORDER BY {column} COLLATE NOCASE ASC
                """
            ).fetchall()
        return [row[0] for row in rows]

    def counts(self) -> dict[str, int]:
        with self._lock:
            points = self._conn.execute("SELECT COUNT(*) FROM point_details").fetchone()[0]
            permissions = self._conn.execute("SELECT COUNT(*) FROM permissions").fetchone()[0]
        return {"points": points, "permissions": permissions}
