"""
FTP / FTPS / SFTP download client for file sources.

Files are pulled whole into memory; the extractor parses them afterwards.
"""

from __future__ import annotations

import ftplib
import io
import logging
import socket
from typing import Any

import paramiko

from sheetsync.errors import SourceConnectionError, SourceUnreachable
from sheetsync.models.jobs import FtpSource

logger = logging.getLogger(__name__)


class FtpFileClient:
    def __init__(self, source: FtpSource, *, timeout_seconds: float = 15.0) -> None:
        self._source = source
        self._timeout = timeout_seconds
        self._ftp: ftplib.FTP | None = None
        self._transport: paramiko.Transport | None = None
        self._sftp: paramiko.SFTPClient | None = None

    @property
    def protocol(self) -> str:
        return self._source.protocol

    def connect(self) -> None:
        if not self._source.host:
            raise SourceConnectionError(f"FTP source '{self._source.id}' has no host")
        logger.info("connecting to %s host %s:%s", self.protocol, self._source.host, self._source.port)
        try:
            if self.protocol == "sftp":
                self._connect_sftp()
            else:
                self._connect_ftp()
        except (socket.timeout, TimeoutError) as exc:
            self.close()
            raise SourceConnectionError(f"timed out connecting to {self._source.host}: {exc}") from exc
        except paramiko.AuthenticationException as exc:
            self.close()
            raise SourceConnectionError(f"authentication failed for {self._source.host}: {exc}") from exc
        except (ftplib.Error, paramiko.SSHException, OSError) as exc:
            self.close()
            raise SourceConnectionError(f"could not connect to {self._source.host}: {exc}") from exc

    def _connect_ftp(self) -> None:
        ftp: ftplib.FTP = ftplib.FTP_TLS(timeout=self._timeout) if self.protocol == "ftps" else ftplib.FTP(timeout=self._timeout)
        self._ftp = ftp
        ftp.connect(self._source.host, self._source.port)
        ftp.login(self._source.user or "anonymous", self._source.password or "")
        if isinstance(ftp, ftplib.FTP_TLS):
            ftp.prot_p()

    def _connect_sftp(self) -> None:
        transport = paramiko.Transport((self._source.host, self._source.port))
        self._transport = transport
        transport.banner_timeout = self._timeout
        transport.auth_timeout = self._timeout
        transport.connect(username=self._source.user or None, password=self._source.password or None)
        self._sftp = paramiko.SFTPClient.from_transport(transport)

    def download(self, path: str) -> bytes:
        if self._ftp is None and self._sftp is None:
            self.connect()
        buffer = io.BytesIO()
        try:
            if self._sftp is not None:
                self._sftp.getfo(path, buffer)
            elif self._ftp is not None:
                self._ftp.retrbinary(f"RETR {path}", buffer.write)
        except (FileNotFoundError, ftplib.error_perm) as exc:
            raise SourceUnreachable(f"file '{path}' could not be read: {exc}") from exc
        except (socket.timeout, TimeoutError, ftplib.Error, paramiko.SSHException, OSError) as exc:
            raise SourceConnectionError(f"download of '{path}' failed: {exc}") from exc
        data = buffer.getvalue()
        logger.info("downloaded %s (%s bytes)", path, len(data))
        return data

    def close(self) -> None:
        try:
            if self._ftp is not None:
                try:
                    self._ftp.quit()
                except (ftplib.Error, OSError):
                    self._ftp.close()
        finally:
            self._ftp = None
        try:
            if self._sftp is not None:
                self._sftp.close()
        finally:
            self._sftp = None
        try:
            if self._transport is not None:
                self._transport.close()
        finally:
            self._transport = None

    def __enter__(self) -> FtpFileClient:
        self.connect()
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: Any) -> None:
        self.close()
