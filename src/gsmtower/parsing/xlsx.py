"""Streaming reader for the worksheets of an ``.xlsx`` container.

Only the small workbook, relationship and shared-string parts are loaded into
memory. The worksheet itself is decompressed by a producer thread into a
bounded queue of chunks and tokenized incrementally by an ``lxml`` pull
parser, so memory use does not grow with the number of rows.
"""

import queue
import threading
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from lxml import etree

from gsmtower.utils.logging import get_logger

logger = get_logger(__name__)

WORKBOOK_PART = "xl/workbook.xml"
WORKBOOK_RELS_PART = "xl/_rels/workbook.xml.rels"
SHARED_STRINGS_PART = "xl/sharedStrings.xml"
RELATIONSHIP_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"

CHUNK_SIZE = 64 * 1024
PIPE_CHUNKS = 4
PIPE_POLL_SECONDS = 0.1

ENCRYPTED_FLAG = 0x1
SUPPORTED_COMPRESSION = {zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2, zipfile.ZIP_LZMA}

_END = object()


class XlsxFormatError(ValueError):
    pass


@dataclass(frozen=True)
class XlsxRow:
    index: int
    values: dict[str, str]


def _xml_parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


def _local_name(tag: object) -> str:
    # comments and processing instructions carry non-string tags
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _check_member(info: zipfile.ZipInfo) -> None:
    if info.flag_bits & ENCRYPTED_FLAG:
        raise XlsxFormatError(f"{info.filename} is encrypted")
    if info.compress_type not in SUPPORTED_COMPRESSION:
        raise XlsxFormatError(f"{info.filename} uses unsupported compression method {info.compress_type}")


def _read_part(archive: zipfile.ZipFile, name: str) -> etree._Element:
    try:
        info = archive.getinfo(name)
    except KeyError as exc:
        raise XlsxFormatError(f"missing part {name}") from exc
    _check_member(info)
    data = archive.read(info)
    try:
        return etree.fromstring(data, parser=_xml_parser())
    except etree.XMLSyntaxError as exc:
        raise XlsxFormatError(f"malformed part {name}: {exc}") from exc


def _resolve_target(target: str) -> str:
    if target.startswith("/"):
        return target.lstrip("/")
    return f"xl/{target}"


def worksheet_paths(path: Path) -> dict[str, str]:
    """Map sheet names to worksheet part paths, in workbook order."""
    with zipfile.ZipFile(path) as archive:
        workbook = _read_part(archive, WORKBOOK_PART)
        rels = _read_part(archive, WORKBOOK_RELS_PART)

    targets: dict[str, str] = {}
    for element in rels.iter():
        if _local_name(element.tag) != "Relationship":
            continue
        rel_id = element.get("Id")
        target = element.get("Target")
        if not rel_id or not target:
            continue
        part = _resolve_target(target)
        if part.startswith("xl/worksheets/"):
            targets[rel_id] = part

    sheets: dict[str, str] = {}
    for element in workbook.iter():
        if _local_name(element.tag) != "sheet":
            continue
        name = element.get("name")
        rel_id = element.get(f"{{{RELATIONSHIP_NS}}}id")
        if name and rel_id in targets:
            sheets[name] = targets[rel_id]
    return sheets


def _shared_item_text(item: etree._Element) -> str:
    parts: list[str] = []
    for child in item:
        name = _local_name(child.tag)
        if name == "t":
            parts.append(child.text or "")
        elif name == "r":
            for run_child in child:
                if _local_name(run_child.tag) == "t":
                    parts.append(run_child.text or "")
    return "".join(parts)


def shared_strings(path: Path) -> list[str]:
    with zipfile.ZipFile(path) as archive:
        if SHARED_STRINGS_PART not in archive.namelist():
            return []
        info = archive.getinfo(SHARED_STRINGS_PART)
        _check_member(info)
        strings: list[str] = []
        with archive.open(info) as handle:
            try:
                for _, element in etree.iterparse(
                    handle, events=("end",), resolve_entities=False, no_network=True, huge_tree=True
                ):
                    if _local_name(element.tag) != "si":
                        continue
                    strings.append(_shared_item_text(element))
                    _release(element)
            except etree.XMLSyntaxError as exc:
                raise XlsxFormatError(f"malformed part {SHARED_STRINGS_PART}: {exc}") from exc
    return strings


def _release(element: etree._Element) -> None:
    element.clear()
    parent = element.getparent()
    if parent is None:
        return
    while element.getprevious() is not None:
        del parent[0]


def _column_letters(ref: str | None) -> str | None:
    if not ref:
        return None
    return ref.rstrip("0123456789") or None


def _row_number(value: str | None, fallback: int) -> int:
    if value is None:
        return fallback
    try:
        return int(value)
    except ValueError:
        return fallback


class XlsxRowReader:
    """Lazy, single-pass iterator over the rows of one worksheet.

    Each row is an :class:`XlsxRow` whose ``values`` map column letters to
    cell text, shared strings already resolved. Malformed worksheet XML or a
    broken deflate stream ends iteration early with a warning; callers must
    not read a short sequence as a complete one.
    """

    def __init__(
        self,
        path: Path,
        sheet_name: str | None = None,
        shared: list[str] | None = None,
        chunk_size: int = CHUNK_SIZE,
        pipe_size: int = PIPE_CHUNKS,
    ) -> None:
        self.path = Path(path)
        sheets = worksheet_paths(self.path)
        if not sheets:
            raise XlsxFormatError(f"{self.path.name} declares no worksheets")
        if sheet_name is None:
            part = next(iter(sheets.values()))
        else:
            part = sheets.get(sheet_name)
            if part is None:
                raise XlsxFormatError(f"{self.path.name} has no sheet named {sheet_name!r}")

        self._shared = shared_strings(self.path) if shared is None else shared
        self._archive = zipfile.ZipFile(self.path)
        try:
            info = self._archive.getinfo(part)
            _check_member(info)
        except KeyError as exc:
            self._archive.close()
            raise XlsxFormatError(f"missing part {part}") from exc
        except XlsxFormatError:
            self._archive.close()
            raise

        self._chunk_size = chunk_size
        self._pipe: queue.Queue = queue.Queue(maxsize=pipe_size)
        self._stop = threading.Event()
        self._closed = False

        self._row_index = 0
        self._values: dict[str, str] = {}
        self._cell_column: str | None = None
        self._cell_type: str | None = None
        self._cell_text = ""

        self._producer = threading.Thread(
            target=self._produce, args=(info,), name=f"xlsx-{self.path.name}", daemon=True
        )
        self._producer.start()
        self._rows = self._parse()

    def __enter__(self) -> "XlsxRowReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __iter__(self) -> "XlsxRowReader":
        return self

    def __next__(self) -> XlsxRow:
        if self._closed:
            raise StopIteration
        try:
            return next(self._rows)
        except StopIteration:
            self.close()
            raise

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self._rows.close()
        self._producer.join()
        self._archive.close()

    def _put(self, item: object) -> bool:
        while not self._stop.is_set():
            try:
                self._pipe.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _produce(self, info: zipfile.ZipInfo) -> None:
        # every exit hands the consumer either an error or the end marker
        try:
            with self._archive.open(info) as stream:
                while not self._stop.is_set():
                    chunk = stream.read(self._chunk_size)
                    if not chunk:
                        break
                    if not self._put(chunk):
                        return
        except Exception as exc:
            self._put(exc)
            return
        self._put(_END)

    def _next_item(self) -> object:
        while True:
            try:
                return self._pipe.get(timeout=PIPE_POLL_SECONDS)
            except queue.Empty:
                if not self._producer.is_alive() and self._pipe.empty():
                    return RuntimeError("decompression thread stopped without finishing")

    def _parse(self) -> Iterator[XlsxRow]:
        parser = etree.XMLPullParser(
            events=("start", "end"), resolve_entities=False, no_network=True, huge_tree=True
        )
        while True:
            item = self._next_item()
            if isinstance(item, BaseException):
                logger.warning("Decompression of %s stopped early: %s", self.path.name, item)
                return
            failure = None
            try:
                if item is _END:
                    parser.close()
                else:
                    parser.feed(item)
            except etree.XMLSyntaxError as exc:
                failure = exc
            # rows completed before a syntax error are still delivered
            yield from self._rows_from(parser.read_events())
            if failure is not None:
                logger.warning("Malformed worksheet XML in %s: %s", self.path.name, failure)
                return
            if item is _END:
                return

    def _rows_from(self, events: Iterable[tuple[str, etree._Element]]) -> Iterator[XlsxRow]:
        for event, element in events:
            name = _local_name(element.tag)
            if event == "start":
                if name == "row":
                    self._row_index = _row_number(element.get("r"), self._row_index + 1)
                    self._values = {}
                elif name == "c":
                    self._cell_column = _column_letters(element.get("r"))
                    self._cell_type = element.get("t")
                    self._cell_text = ""
                continue

            if name == "v" or (name == "t" and self._cell_type == "inlineStr"):
                self._cell_text += element.text or ""
            elif name == "c":
                if self._cell_column is not None:
                    self._values[self._cell_column] = self._resolve(self._cell_text.strip())
                self._cell_column = None
                self._cell_type = None
            elif name == "row":
                row = XlsxRow(index=self._row_index, values=self._values)
                self._values = {}
                _release(element)
                yield row

    def _resolve(self, raw: str) -> str:
        if self._cell_type != "s":
            return raw
        try:
            index = int(raw)
        except ValueError:
            return ""
        if 0 <= index < len(self._shared):
            return self._shared[index]
        return ""


def iter_rows(path: Path, sheet_name: str | None = None) -> Iterator[XlsxRow]:
    with XlsxRowReader(path, sheet_name=sheet_name) as reader:
        yield from reader
