import zipfile
from pathlib import Path
from xml.sax.saxutils import escape

import pytest

MAIN_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
REL_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
PKG_REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"

PERMIT_HEADER = [
    "Nazwa operatora",
    "Nr decyzji",
    "Rodzaj decyzji",
    "Data ważności",
    "Dł geogr stacji",
    "Szer geogr stacji",
    "Miejscowość",
    "Lokalizacja",
    "IdStacji",
    "TERYT",
]


def column_letter(index: int) -> str:
    letters = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def permit_row(
    station_id: str = "STA001",
    operator_name: str = "Orange Polska S.A.",
    decision_number: str = "12345/2023",
    expiry_serial: float = 46387.0,
    longitude: str = "17E02'24\"",
    latitude: str = "51N06'00\"",
    city: str = "Wrocław",
    location: str = "ul. Legnicka 1",
    teryt: str = "0264011",
) -> list[object]:
    return [
        operator_name,
        decision_number,
        "P",
        expiry_serial,
        longitude,
        latitude,
        city,
        location,
        station_id,
        teryt,
    ]


def _sheet_xml(rows: list[list[object]], shared: list[str], index: dict[str, int]) -> str:
    parts = [f'<worksheet xmlns="{MAIN_NS}"><sheetData>']
    for row_number, row in enumerate(rows, start=1):
        parts.append(f'<row r="{row_number}">')
        for column, value in enumerate(row):
            if value is None:
                continue
            ref = f"{column_letter(column)}{row_number}"
            if isinstance(value, str):
                if value not in index:
                    index[value] = len(shared)
                    shared.append(value)
                parts.append(f'<c r="{ref}" t="s"><v>{index[value]}</v></c>')
            else:
                parts.append(f'<c r="{ref}"><v>{value}</v></c>')
        parts.append("</row>")
    parts.append("</sheetData></worksheet>")
    return "".join(parts)


def write_xlsx_parts(
    path: Path,
    sheets: dict[str, str],
    shared: list[str] | None = None,
    include_workbook: bool = True,
) -> Path:
    """Write a minimal OOXML container from raw worksheet XML strings."""
    path.parent.mkdir(parents=True, exist_ok=True)
    workbook_sheets = []
    relationships = [
        f'<Relationship Id="rIdStyles" Type="{REL_NS}/styles" Target="styles.xml"/>',
    ]
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for number, (name, xml) in enumerate(sheets.items(), start=1):
            workbook_sheets.append(f'<sheet name="{escape(name)}" sheetId="{number}" r:id="rId{number}"/>')
            relationships.append(
                f'<Relationship Id="rId{number}" Type="{REL_NS}/worksheet" Target="worksheets/sheet{number}.xml"/>'
            )
            archive.writestr(f"xl/worksheets/sheet{number}.xml", '<?xml version="1.0" encoding="UTF-8"?>' + xml)
        if include_workbook:
            archive.writestr(
                "xl/workbook.xml",
                f'<?xml version="1.0" encoding="UTF-8"?><workbook xmlns="{MAIN_NS}" xmlns:r="{REL_NS}">'
                f"<sheets>{''.join(workbook_sheets)}</sheets></workbook>",
            )
            archive.writestr(
                "xl/_rels/workbook.xml.rels",
                f'<?xml version="1.0" encoding="UTF-8"?><Relationships xmlns="{PKG_REL_NS}">'
                f"{''.join(relationships)}</Relationships>",
            )
        if shared is not None:
            items = "".join(f"<si><t>{escape(text)}</t></si>" for text in shared)
            archive.writestr(
                "xl/sharedStrings.xml",
                f'<?xml version="1.0" encoding="UTF-8"?><sst xmlns="{MAIN_NS}" count="{len(shared)}" '
                f'uniqueCount="{len(shared)}">{items}</sst>',
            )
    return path


def write_xlsx(path: Path, rows: list[list[object]], sheet_name: str = "Arkusz1") -> Path:
    shared: list[str] = []
    sheet = _sheet_xml(rows, shared, {})
    return write_xlsx_parts(path, {sheet_name: sheet}, shared)


@pytest.fixture
def make_xlsx(tmp_path: Path):
    def _make(name: str, rows: list[list[object]], sheet_name: str = "Arkusz1") -> Path:
        return write_xlsx(tmp_path / "xlsx" / name, rows, sheet_name)

    return _make


@pytest.fixture
def make_xlsx_parts(tmp_path: Path):
    def _make(name: str, sheets: dict[str, str], shared: list[str] | None = None, **kwargs) -> Path:
        return write_xlsx_parts(tmp_path / "xlsx" / name, sheets, shared, **kwargs)

    return _make


@pytest.fixture
def permit_rows():
    def _rows(*rows: list[object]) -> list[list[object]]:
        return [list(PERMIT_HEADER), *rows]

    return _rows


@pytest.fixture
def make_permit_row():
    return permit_row


@pytest.fixture
def xlsx_writer():
    return write_xlsx


CENTRAL_DIRECTORY_SIGNATURE = b"PK\x01\x02"
CENTRAL_FLAG_OFFSET = 8
CENTRAL_METHOD_OFFSET = 10
CENTRAL_NAME_LENGTH_OFFSET = 28
CENTRAL_NAME_OFFSET = 46


def rewrite_member_header(path: Path, member: str, flag_bits: int | None = None, method: int | None = None) -> Path:
    """Patch the central-directory entry of ``member`` in place."""
    data = bytearray(path.read_bytes())
    name = member.encode()
    start = data.find(CENTRAL_DIRECTORY_SIGNATURE)
    while start >= 0:
        length_at = start + CENTRAL_NAME_LENGTH_OFFSET
        name_length = int.from_bytes(data[length_at : length_at + 2], "little")
        if data[start + CENTRAL_NAME_OFFSET : start + CENTRAL_NAME_OFFSET + name_length] == name:
            if flag_bits is not None:
                data[start + CENTRAL_FLAG_OFFSET : start + CENTRAL_FLAG_OFFSET + 2] = flag_bits.to_bytes(2, "little")
            if method is not None:
                data[start + CENTRAL_METHOD_OFFSET : start + CENTRAL_METHOD_OFFSET + 2] = method.to_bytes(2, "little")
            path.write_bytes(bytes(data))
            return path
        start = data.find(CENTRAL_DIRECTORY_SIGNATURE, start + 4)
    raise AssertionError(f"{member} not found in {path}")


@pytest.fixture
def patch_zip_member():
    return rewrite_member_header
