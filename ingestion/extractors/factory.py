"""
Extractor selection by source type
"""

from typing import Dict, Type
from ingestion.base import SourceExtractor
from ingestion.extractors.api_extractor import APIExtractor
from ingestion.extractors.csv_extractor import CSVExtractor
from ingestion.extractors.database_extractor import DatabaseExtractor
from ingestion.extractors.file_extractor import JSONExtractor, XMLExtractor
from ingestion.extractors.ftp_extractor import FTPExtractor
from models.base import SourceType
from schemas.source import SourceConfig

EXTRACTORS: Dict[SourceType, Type[SourceExtractor]] = {
    SourceType.JSON: JSONExtractor,
    SourceType.CSV: CSVExtractor,
    SourceType.XML: XMLExtractor,
    SourceType.API: APIExtractor,
    SourceType.DATABASE: DatabaseExtractor,
    SourceType.FTP: FTPExtractor,
}


def build_extractor(source: SourceConfig, **kwargs) -> SourceExtractor:
    """Instantiate the extractor registered for `source.type`."""
    extractor_class = EXTRACTORS[SourceType(source.type)]
    return extractor_class(source, **kwargs)
