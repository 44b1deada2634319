import pytest

from gsmtower.schemas.point import Location, Point, PointDetails, PointFilter, PointPermission
from gsmtower.storage.spatial import SpatialStore, bounding_box


def permission(technology: str = "LTE", operator_name: str = "Orange", decision: str = "1") -> PointPermission:
    return PointPermission(
        operator_name=operator_name,
        decision_number=decision,
        decision_type="P",
        expiry_date=1893456000,
        technology=technology,
    )


def make_point(
    station_id: str = "STA001",
    latitude: float = 51.10,
    longitude: float = 17.04,
    city: str = "Wrocław",
    permissions: list[PointPermission] | None = None,
) -> Point:
    return Point(
        longitude=longitude,
        latitude=latitude,
        details=PointDetails(city=city, location="ul. Legnicka 1", station_id=station_id, teryt="0264011"),
        permissions=permissions or [permission()],
    )


@pytest.fixture
def store():
    with SpatialStore() as spatial:
        yield spatial


def test_save_is_idempotent(store: SpatialStore) -> None:
    points = [
        make_point("STA001", permissions=[permission("LTE"), permission("GSM")]),
        make_point("STA002", latitude=52.23, longitude=21.01),
    ]

    store.save(points)
    first = store.counts()
    store.save(points)

    assert first == {"points": 2, "permissions": 3}
    assert store.counts() == first


def test_first_write_wins_for_details_but_permissions_extend(store: SpatialStore) -> None:
    store.save([make_point(city="Wrocław")])
    store.save([make_point(city="Breslau", latitude=50.0, permissions=[permission("LTE"), permission("5G")])])

    (point,) = store.get_all_points()
    assert point.details.city == "Wrocław"
    assert point.latitude == pytest.approx(51.10)
    assert [p.technology for p in point.permissions] == ["LTE", "5G"]


def test_find_points_within_radius(store: SpatialStore) -> None:
    store.save([make_point()])

    found = store.find_points(Location(latitude=51.10, longitude=17.04), 100, PointFilter())
    missed = store.find_points(Location(latitude=49.5, longitude=17.04), 100, PointFilter())

    assert [point.details.station_id for point in found] == ["STA001"]
    assert found[0].latitude == 51.1
    assert found[0].longitude == 17.04
    assert missed == []


def test_find_points_excludes_points_outside_box(store: SpatialStore) -> None:
    store.save([make_point("NEAR"), make_point("FAR", latitude=51.12, longitude=17.04)])

    found = store.find_points(Location(latitude=51.10, longitude=17.04), 500)

    assert [point.details.station_id for point in found] == ["NEAR"]


def test_query_groups_permissions_per_point(store: SpatialStore) -> None:
    store.save(
        [
            make_point(
                permissions=[
                    permission("LTE", "Orange"),
                    permission("GSM", "Orange"),
                    permission("LTE", "Play"),
                ]
            )
        ]
    )

    points = store.find_points(Location(latitude=51.10, longitude=17.04), 100)

    assert len(points) == 1
    assert [p.key for p in points[0].permissions] == [("LTE", "Orange"), ("GSM", "Orange"), ("LTE", "Play")]


def test_filters_restrict_technology_and_operator(store: SpatialStore) -> None:
    store.save(
        [
            make_point("STA001", permissions=[permission("LTE", "Orange"), permission("GSM", "Play")]),
            make_point("STA002", latitude=51.1001, permissions=[permission("5G", "T-Mobile")]),
        ]
    )

    by_tech = store.get_all_points(PointFilter(technologies={"LTE", "5G"}))
    by_operator = store.get_all_points(PointFilter(operator_names={"Play"}))
    both = store.find_points(
        Location(latitude=51.10, longitude=17.04),
        100,
        PointFilter(technologies={"LTE"}, operator_names={"Play"}),
    )

    assert {point.details.station_id for point in by_tech} == {"STA001", "STA002"}
    assert [p.technology for p in by_tech[0].permissions] == ["LTE"]
    assert [point.details.station_id for point in by_operator] == ["STA001"]
    assert [p.operator_name for p in by_operator[0].permissions] == ["Play"]
    assert both == []


def test_technologies_and_operators_are_sorted_case_insensitively(store: SpatialStore) -> None:
    store.save(
        [
            make_point("STA001", permissions=[permission("lte", "play"), permission("GSM", "Orange")]),
            make_point("STA002", permissions=[permission("5G", "Orange"), permission("GSM", "aero2")]),
        ]
    )

    assert store.get_all_technologies() == ["5G", "GSM", "lte"]
    assert store.get_all_operator_names() == ["aero2", "Orange", "play"]


def test_delete_all_clears_every_table(store: SpatialStore) -> None:
    store.save([make_point("STA001"), make_point("STA002", latitude=50.0)])

    store.delete_all()

    assert store.counts() == {"points": 0, "permissions": 0}
    assert store.get_all_points() == []
    assert store.find_points(Location(latitude=51.10, longitude=17.04), 1_000) == []


def test_file_database_persists_between_connections(tmp_path) -> None:
    db_path = tmp_path / "db" / "gsm_points.sqlite"
    with SpatialStore(db_path) as spatial:
        spatial.save([make_point()])

    with SpatialStore(db_path) as reopened:
        assert [point.details.station_id for point in reopened.get_all_points()] == ["STA001"]


def test_bounding_box_scales_longitude_with_latitude() -> None:
    min_lat, max_lat, min_lon, max_lon = bounding_box(Location(latitude=60.0, longitude=10.0), 111_000)

    assert (min_lat, max_lat) == pytest.approx((59.0, 61.0))
    assert (min_lon, max_lon) == pytest.approx((8.0, 12.0))


def test_empty_filter_sets_do_not_restrict(store: SpatialStore) -> None:
    store.save([make_point("STA001"), make_point("STA002", permissions=[permission("GSM", "Play")])])
    empty = PointFilter(technologies=set(), operator_names=set())

    assert empty.is_empty
    assert not PointFilter(technologies={"LTE"}).is_empty
    assert len(store.get_all_points(empty)) == 2
