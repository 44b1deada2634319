from dataclasses import dataclass, field
from pathlib import Path

from gsmtower.ingestion.uke import DEFAULT_SOURCE_URL
from gsmtower.io.paths import DataPaths
from gsmtower.utils.accumulator import DEFAULT_FLUSH_SIZE
from gsmtower.utils.http import RetryConfig


@dataclass
class StationsConfig:
    data_dir: Path = Path("data")
    source_url: str = DEFAULT_SOURCE_URL
    flush_size: int = DEFAULT_FLUSH_SIZE
    file_group_size: int = 3
    max_parallel_downloads: int = 4
    timeout_seconds: float = 30.0
    throttle_seconds: float = 0.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    user_agent: str = "gsmtower/0.1 (+https://bip.uke.gov.pl)"
    bs_parser: str = "lxml"

    @property
    def paths(self) -> DataPaths:
        return DataPaths(data_dir=Path(self.data_dir))

    @property
    def files_dir(self) -> Path:
        return self.paths.files_dir

    @property
    def db_path(self) -> Path:
        return self.paths.db_path
