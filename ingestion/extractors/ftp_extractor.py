"""
FTP extractor: downloads the remote file, then parses it like a local one
"""

from typing import Any, AsyncIterator, Dict, Iterator, Optional
from datetime import datetime
import asyncio
import ftplib
import logging
import tempfile

from core.exceptions import AuthenticationError, ResourceNotFoundError, SourceConnectionError
from ingestion.base import SourceExtractor, iterate_in_thread
from ingestion.extractors.parsers import iter_rows_for_format

logger = logging.getLogger(__name__)

# Spool downloads in memory up to this size, then on disk
SPOOL_MAX_BYTES = 8 * 1024 * 1024


class FTPExtractor(SourceExtractor):
    """
    Connection descriptor:
        host: FTP server (required)
        port: default 21
        user / password: default anonymous login
        path: Remote file path (required)
        tls: Use FTP over TLS (default False)
        record_tag / delimiter / encoding: passed to the parser for the source format
    """

    def _connect(self) -> ftplib.FTP:
        host = self.connection.get("host")
        if not host:
            raise ResourceNotFoundError(
                f"Source '{self.source_name}' has no 'host' in its connection descriptor",
                context=self._context(),
            )

        ftp = ftplib.FTP_TLS() if self.connection.get("tls") else ftplib.FTP()
        try:
            ftp.connect(host, int(self.connection.get("port", 21)), timeout=self.timeout)
            ftp.login(self.connection.get("user", "anonymous"), self.connection.get("password", ""))
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
        except ftplib.error_perm as e:
            ftp.close()
            raise AuthenticationError(
                f"FTP login rejected: {e}",
                context=self._context(),
                original_exception=e,
            )
        except (OSError, ftplib.Error) as e:
            ftp.close()
            raise SourceConnectionError(
                f"Cannot connect to FTP server {host}: {e}",
                context=self._context(),
                original_exception=e,
            )
        return ftp

    def _noop(self) -> str:
        ftp = self._connect()
        try:
            response = ftp.voidcmd("NOOP")
        finally:
            ftp.close()
        return f"NOOP -> {response}"

    async def probe_source(self) -> str:
        return await asyncio.to_thread(self._noop)

    def _download(self):
        path = self.connection.get("path")
        if not path:
            raise ResourceNotFoundError(
                f"Source '{self.source_name}' has no 'path' in its connection descriptor",
                context=self._context(),
            )

        ftp = self._connect()
        buffer = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES)
        try:
            ftp.retrbinary(f"RETR {path}", buffer.write)
        except ftplib.error_perm as e:
            buffer.close()
            raise ResourceNotFoundError(
                f"Cannot retrieve {path}: {e}",
                context=self._context(),
                original_exception=e,
            )
        except (OSError, ftplib.Error) as e:
            buffer.close()
            raise SourceConnectionError(
                f"Transfer of {path} failed: {e}",
                context=self._context(),
                original_exception=e,
            )
        finally:
            ftp.close()

        buffer.seek(0)
        logger.info(f"Downloaded {path} for source '{self.source_name}'")
        return buffer

    def _open_rows(self) -> Iterator[Dict[str, Any]]:
        buffer = self._download()
        try:
            yield from iter_rows_for_format(
                self.source.format,
                buffer,
                chunksize=self.batch_size,
                record_tag=self.connection.get("record_tag"),
                delimiter=self.connection.get("delimiter", ","),
                encoding=self.connection.get("encoding", "utf-8"),
            )
        finally:
            buffer.close()

    async def iter_rows(self, since: Optional[datetime] = None) -> AsyncIterator[Dict[str, Any]]:
        async for row in iterate_in_thread(self._open_rows, self.batch_size):
            yield row
