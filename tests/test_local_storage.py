from datetime import date, datetime, timezone

import pytest

from gsmtower.io.storage import PointFileStorage, simplify_file_name


def test_simplify_file_name_strips_publication_suffix() -> None:
    assert simplify_file_name("LTE800_-_stan_na_2024-01-02.xlsx") == "LTE800.xlsx"
    assert simplify_file_name("GSM900.xlsx") == "GSM900.xlsx"


def test_save_writes_into_date_bucket(tmp_path) -> None:
    storage = PointFileStorage(tmp_path)
    published = datetime(2024, 1, 2, 10, 15, tzinfo=timezone.utc)

    path = storage.save(b"data", published, "LTE_-_stan_na_2024-01-02.xlsx")

    assert path == tmp_path / "2024-01-02" / "LTE.xlsx"
    assert path.read_bytes() == b"data"
    assert storage.list_available_dates() == [date(2024, 1, 2)]
    assert storage.list_files(date(2024, 1, 2)) == [path]


def test_save_rejects_other_extensions(tmp_path) -> None:
    storage = PointFileStorage(tmp_path)

    with pytest.raises(ValueError):
        storage.save(b"data", date(2024, 1, 2), "report.pdf")


def test_list_available_dates_ignores_foreign_entries(tmp_path) -> None:
    (tmp_path / "2024-01-01").mkdir()
    (tmp_path / "2023-12-01").mkdir()
    (tmp_path / "cache").mkdir()
    (tmp_path / "2024-02-01").write_text("not a folder")
    storage = PointFileStorage(tmp_path)

    assert storage.list_available_dates() == [date(2023, 12, 1), date(2024, 1, 1)]
    assert PointFileStorage(tmp_path / "missing").list_available_dates() == []


def test_list_files_only_returns_spreadsheets(tmp_path) -> None:
    folder = tmp_path / "2024-01-01"
    folder.mkdir()
    (folder / "metrics.json").write_text("{}")
    (folder / "GSM.xlsx").write_bytes(b"")
    (folder / "LTE.xlsx").write_bytes(b"")

    files = PointFileStorage(tmp_path).list_files(date(2024, 1, 1))

    assert [path.name for path in files] == ["GSM.xlsx", "LTE.xlsx"]


def test_read_file_skips_header_and_converts_dates(tmp_path, xlsx_writer, permit_rows, make_permit_row) -> None:
    storage = PointFileStorage(tmp_path / "files")
    day = date(2024, 1, 2)
    xlsx_writer(
        storage.folder_for(day) / "LTE.xlsx",
        permit_rows(make_permit_row(expiry_serial=44927.5), make_permit_row(station_id="STA002")),
    )

    rows = list(storage.read_file("LTE.xlsx", day))

    assert len(rows) == 2
    assert rows[0][0] == "Orange Polska S.A."
    assert rows[0][3] == "1672574400"
    assert rows[0][8] == "STA001"
    assert rows[1][8] == "STA002"


def test_read_file_missing_raises(tmp_path) -> None:
    storage = PointFileStorage(tmp_path)

    with pytest.raises(FileNotFoundError):
        next(storage.read_file("LTE.xlsx", date(2024, 1, 2)))


def test_delete_all_files_removes_buckets(tmp_path) -> None:
    storage = PointFileStorage(tmp_path)
    storage.save(b"a", date(2024, 1, 1), "GSM.xlsx")
    storage.save(b"b", date(2024, 1, 2), "GSM.xlsx")

    storage.delete_all_files()

    assert storage.list_available_dates() == []
