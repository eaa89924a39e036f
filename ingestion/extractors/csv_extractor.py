"""
CSV file extractor streaming pandas chunks
"""

from typing import Any, Dict, Iterator
from ingestion.extractors.file_extractor import FileExtractor
from ingestion.extractors.parsers import iter_csv_rows
import logging

logger = logging.getLogger(__name__)


class CSVExtractor(FileExtractor):
    """
    Extract data from CSV files.

    Supports:
    - Chunked reads (ETL_BATCH_SIZE rows per pandas chunk)
    - Header normalization (strip, lowercase, spaces to underscores)
    - Values kept as text; typing is the Validator's job
    - Custom delimiter via the `delimiter` descriptor key

    Incremental loading uses the base class filter on `timestamp_field`.
    """

    def open_rows(self) -> Iterator[Dict[str, Any]]:
        return iter_csv_rows(
            self.file_path,
            chunksize=self.batch_size,
            delimiter=self.connection.get("delimiter", ","),
            encoding=self.encoding,
        )
