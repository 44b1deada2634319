import gzip
import json
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TextIO


def _open_text(path: Path, mode: str):
    if path.suffix == ".gz":
        return gzip.open(path, mode + "t", encoding="utf-8")
    return open(path, mode, encoding="utf-8")


def read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    with _open_text(path, "r") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            yield json.loads(line)


def write_jsonl(path: Path, rows: Iterable[dict[str, Any]]) -> int:
    written = 0
    with open_jsonl_writer(path) as handle:
        for row in rows:
            write_jsonl_line(handle, row)
            written += 1
    return written


@contextmanager
def open_jsonl_writer(path: Path) -> Iterator[TextIO]:
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = _open_text(path, "w")
    try:
        yield handle
    finally:
        handle.close()


def write_jsonl_line(handle: TextIO, row: dict[str, Any]) -> None:
    json.dump(row, handle, ensure_ascii=False)
    handle.write("\n")
