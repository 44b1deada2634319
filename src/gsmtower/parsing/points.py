import re
from datetime import datetime, timedelta, timezone
from typing import Mapping, Sequence

from gsmtower.schemas.point import Point, PointDetails, PointPermission

FIELD_COUNT = 10
DATE_SERIAL_COLUMN = "D"

COORDINATE_RE = re.compile(r"(\d{1,2})([ENWS])(\d{2})'(\d{2})\"")

# Excel serial 1 is 1900-01-01; serial 60 is the non-existent 1900-02-29.
EXCEL_ORIGIN = datetime(1899, 12, 31, tzinfo=timezone.utc)
EXCEL_FAKE_LEAP_DAY = 60


class RowValidationError(ValueError):
    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


def convert_coordinate(text: str) -> float | None:
    match = COORDINATE_RE.search(text)
    if not match:
        return None
    degrees, hemisphere, minutes, seconds = match.groups()
    value = int(degrees) + int(minutes) / 60 + int(seconds) / 3600
    if hemisphere in ("W", "S"):
        return -value
    return value


def excel_serial_to_unix(serial: float) -> float:
    whole_days = int(serial)
    fraction = serial - whole_days
    if whole_days >= EXCEL_FAKE_LEAP_DAY:
        whole_days -= 1
    moment = EXCEL_ORIGIN + timedelta(days=whole_days) + timedelta(days=fraction)
    return moment.timestamp()


def _column_key(column: str) -> tuple[int, str]:
    return (len(column), column)


def _serial_to_epoch_text(value: str) -> str:
    try:
        serial = float(value)
    except ValueError:
        return ""
    try:
        return str(int(excel_serial_to_unix(serial)))
    except (OverflowError, ValueError):
        return ""


def row_fields(values: Mapping[str, str]) -> list[str]:
    """Order a column-letter mapping by column and convert the expiry date column.

    Column ``D`` holds an Excel date serial and becomes an epoch-seconds string;
    a value that is not a number becomes empty. Other columns pass through.
    """
    fields = []
    for column in sorted(values, key=_column_key):
        value = values[column]
        if column == DATE_SERIAL_COLUMN:
            value = _serial_to_epoch_text(value)
        fields.append(value)
    return fields


class PointRowMapper:
    """Turns one ten-field permit row into a :class:`Point`.

    Field order: operator name, decision number, decision type, expiry date
    (epoch seconds), longitude and latitude in ``17E02'13"`` notation, city,
    location, station id, TERYT code.
    """

    def parse(self, fields: Sequence[str], technology: str) -> Point:
        if len(fields) != FIELD_COUNT:
            raise RowValidationError(
                "invalid_field_count", f"expected {FIELD_COUNT} fields, got {len(fields)}"
            )
        if not technology:
            raise RowValidationError("missing_technology")

        (
            operator_name,
            decision_number,
            decision_type,
            expiry_text,
            longitude_text,
            latitude_text,
            city,
            location,
            station_id,
            teryt,
        ) = fields

        if not all(fields):
            raise RowValidationError("empty_field")

        try:
            expiry_date = int(expiry_text)
        except ValueError as exc:
            raise RowValidationError("invalid_expiry_date", f"not an epoch timestamp: {expiry_text!r}") from exc

        longitude = convert_coordinate(longitude_text)
        latitude = convert_coordinate(latitude_text)
        if longitude is None or latitude is None:
            raise RowValidationError(
                "invalid_coordinate", f"bad coordinates: {longitude_text!r}, {latitude_text!r}"
            )

        return Point(
            longitude=longitude,
            latitude=latitude,
            details=PointDetails(city=city, location=location, station_id=station_id, teryt=teryt),
            permissions=[
                PointPermission(
                    operator_name=operator_name,
                    decision_number=decision_number,
                    decision_type=decision_type,
                    expiry_date=expiry_date,
                    technology=technology,
                )
            ],
        )
