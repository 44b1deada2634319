import re
import shutil
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator

from gsmtower.parsing.points import row_fields
from gsmtower.parsing.xlsx import XlsxRowReader
from gsmtower.utils.logging import get_logger

logger = get_logger(__name__)

FILE_SUFFIX = ".xlsx"
FOLDER_DATE_FORMAT = "%Y-%m-%d"
PUBLICATION_SUFFIX_RE = re.compile(r"_-_stan_na_\d{4}-\d{2}-\d{2}")


def simplify_file_name(file_name: str) -> str:
    return PUBLICATION_SUFFIX_RE.sub("", file_name)


def _civil_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


class PointFileStorage:
    """Downloaded spreadsheets kept in one folder per publication date (UTC)."""

    def __init__(self, storage_dir: Path) -> None:
        self.storage_dir = Path(storage_dir)

    def folder_for(self, day: date | datetime) -> Path:
        return self.storage_dir / _civil_date(day).strftime(FOLDER_DATE_FORMAT)

    def save(self, file_data: bytes, day: date | datetime, file_name: str) -> Path:
        if not file_name.endswith(FILE_SUFFIX):
            raise ValueError(f"Invalid file extension: {file_name}")
        folder = self.folder_for(day)
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / simplify_file_name(file_name)
        path.write_bytes(file_data)
        logger.info("Saved %s (%d bytes)", path, len(file_data))
        return path

    def list_available_dates(self) -> list[date]:
        if not self.storage_dir.exists():
            return []
        dates = []
        for entry in self.storage_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                dates.append(datetime.strptime(entry.name, FOLDER_DATE_FORMAT).date())
            except ValueError:
                continue
        return sorted(dates)

    def list_files(self, day: date | datetime) -> list[Path]:
        folder = self.folder_for(day)
        if not folder.exists():
            return []
        return sorted(path for path in folder.iterdir() if path.suffix == FILE_SUFFIX)

    def read_file(self, file_name: str, day: date | datetime) -> Iterator[list[str]]:
        """Yield the transformed fields of every data row, header row skipped.

        The file is checked and opened on the first ``next()``.
        """
        path = self.folder_for(day) / file_name
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        with XlsxRowReader(path) as reader:
            skip_header = True
            for row in reader:
                if skip_header:
                    skip_header = False
                    continue
                yield row_fields(row.values)

    def delete_folder(self, day: date | datetime) -> None:
        folder = self.folder_for(day)
        if folder.exists():
            shutil.rmtree(folder)

    def delete_all_files(self) -> None:
        for day in self.list_available_dates():
            self.delete_folder(day)
