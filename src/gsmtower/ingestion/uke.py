import re
from datetime import datetime, timezone
from functools import partial
from pathlib import PurePosixPath
from typing import Callable
from urllib.parse import unquote, urljoin, urlsplit

from bs4 import BeautifulSoup

from gsmtower.utils.concurrency import ConcurrencyLimiter
from gsmtower.utils.http import PoliteHttpClient
from gsmtower.utils.logging import get_logger
from gsmtower.utils.text import clean

logger = get_logger(__name__)

DEFAULT_SOURCE_URL = (
    "https://bip.uke.gov.pl/pozwolenia-radiowe/wykaz-pozwolen-radiowych-tresci/"
    "stacje-gsm-umts-lte-5gnr-oraz-cdma,12,0.html"
)

MODIFIED_LABEL = "Data ostatniej modyfikacji:"
DATE_FORMATS = ("%d.%m.%Y %H:%M", "%d.%m.%Y", "%Y-%m-%d")
ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
XLSX_SUFFIX = ".xlsx"

SaveHandler = Callable[[datetime, bytes, str], object]


class PublicationError(RuntimeError):
    pass


def parse_date(text: str) -> datetime | None:
    value = text.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def extract_date_from_table_cell(html: str, bs_parser: str = "lxml") -> datetime | None:
    soup = BeautifulSoup(html, bs_parser)
    for label in soup.find_all("td"):
        if MODIFIED_LABEL not in label.get_text(" ", strip=True):
            continue
        value_cell = label.find_next_sibling("td")
        if value_cell is None:
            continue
        strong = value_cell.find("strong")
        if strong is None:
            continue
        text = clean(strong.get_text(" ", strip=True))
        if text:
            return parse_date(text)
    return None


def extract_first_iso_date(html: str) -> datetime | None:
    match = ISO_DATE_RE.search(html)
    if not match:
        return None
    return parse_date(match.group(0))


def current_data_date(html: str, bs_parser: str = "lxml") -> datetime:
    """Publication date of the register page.

    The "last modified" table cell wins; otherwise the first ``YYYY-MM-DD``
    anywhere in the page, which is usually part of a file name.
    """
    published = extract_date_from_table_cell(html, bs_parser) or extract_first_iso_date(html)
    if published is None:
        raise PublicationError("No valid date found")
    return published


def extract_xlsx_links(html: str, base_url: str, bs_parser: str = "lxml") -> list[str]:
    soup = BeautifulSoup(html, bs_parser)
    links: list[str] = []
    seen: set[str] = set()
    for tag in soup.find_all(href=True):
        href = tag["href"].strip()
        if not href.endswith(XLSX_SUFFIX):
            continue
        absolute = href if href.startswith("http") else urljoin(base_url, href)
        if absolute in seen:
            continue
        seen.add(absolute)
        links.append(absolute)
    return links


def file_name_from_url(url: str) -> str:
    return unquote(PurePosixPath(urlsplit(url).path).name)


class PublicationClient:
    def __init__(
        self,
        http: PoliteHttpClient,
        limiter: ConcurrencyLimiter | None = None,
        bs_parser: str = "lxml",
    ) -> None:
        self._http = http
        self._limiter = limiter or ConcurrencyLimiter(4)
        self._bs_parser = bs_parser

    async def fetch_page(self, page_url: str) -> str:
        result = await self._http.get(page_url)
        if not result.ok:
            raise PublicationError(f"Could not fetch {page_url}: {result.describe_failure()}")
        if result.text is None:
            raise PublicationError(f"Could not decode {page_url}")
        return result.text

    async def fetch_current_data_date(self, page_url: str) -> datetime:
        html = await self.fetch_page(page_url)
        return current_data_date(html, self._bs_parser)

    async def download_files(self, page_url: str, save_handler: SaveHandler) -> list[str]:
        """Download every spreadsheet linked from the page and hand it to ``save_handler``.

        Returns the names of the files that were saved. A file that fails to
        download or save is logged and left out.
        """
        html = await self.fetch_page(page_url)
        published = current_data_date(html, self._bs_parser)
        links = extract_xlsx_links(html, page_url, self._bs_parser)
        logger.info("Found %d spreadsheets published %s", len(links), published.date())

        results = await self._limiter.run(
            [partial(self._download, url, published, save_handler) for url in links]
        )
        saved = [name for name in results if name]
        logger.info(
            "Saved %d of %d spreadsheets (%d bytes downloaded)",
            len(saved),
            len(links),
            self._http.metrics.bytes_downloaded,
        )
        return saved

    async def _download(self, url: str, published: datetime, save_handler: SaveHandler) -> str | None:
        result = await self._http.get(url)
        if not result.ok or result.content is None:
            logger.warning("Skipping %s: %s", url, result.describe_failure())
            return None
        file_name = file_name_from_url(url)
        try:
            save_handler(published, result.content, file_name)
        except (OSError, ValueError) as exc:
            logger.warning("Could not save %s: %s", file_name, exc)
            return None
        return file_name
