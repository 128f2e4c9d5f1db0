"""
Remote Log Source
Lists death logs and the server log over SFTP and reads bytes appended since an offset
"""

import asyncio
import logging
import posixpath
import stat
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import asyncssh

from killfeed.utils.connection_pool import ConnectionManager
from killfeed.utils.exceptions import TransportErrorKind, TransportException

logger = logging.getLogger(__name__)

DEATHLOG = "deathlog"
SERVER_LOG = "log"

DEATHLOG_PREFIX = "deathlogs/"
SERVER_LOG_PREFIX = "logs/"
SERVER_LOG_NAME = "Deadside.log"

DEATHLOG_PATTERNS = (
    "{host}_{server}/actual1/deathlogs",
    "{host}_{server}/actual/deathlogs",
    "{host}/{server}/actual1/deathlogs",
    "{host}/{server}/actual/deathlogs",
    "{server}/actual1/deathlogs",
    "{server}/actual/deathlogs",
)

SERVER_LOG_PATTERNS = (
    "{host}_{server}/Logs",
    "{host}_{server}/Deadside/Logs",
    "{host}/{server}/Logs",
    "{host}/{server}/Deadside/Logs",
    "{server}/Logs",
    "{server}/Deadside/Logs",
)


@dataclass(frozen=True)
class RemoteFile:
    """A file of interest on the game host"""
    file_id: str
    kind: str
    size: int


def server_key(server: Dict[str, Any]) -> Tuple[int, str]:
    return int(server['guild_id']), str(server['server_id'])


def candidate_paths(server: Dict[str, Any], kind: str) -> List[str]:
    """Configured directory first, then the standard layouts"""
    configured = server.get('deathlog_path') if kind == DEATHLOG else server.get('log_path')
    host = server.get('host', '')
    server_name = str(server.get('server_id') or server.get('name', '').replace(' ', '_'))
    patterns = DEATHLOG_PATTERNS if kind == DEATHLOG else SERVER_LOG_PATTERNS

    candidates = [configured.rstrip('/')] if configured else []
    for pattern in patterns:
        path = "./" + pattern.format(host=host, server=server_name)
        if path not in candidates:
            candidates.append(path)
    return candidates


def translate_error(error: BaseException, path: str) -> TransportException:
    if isinstance(error, TransportException):
        return error
    if isinstance(error, asyncssh.SFTPNoSuchFile):
        return TransportException(TransportErrorKind.NOT_FOUND, f"{path} not found", path)
    if isinstance(error, (asyncssh.SFTPPermissionDenied, asyncssh.PermissionDenied)):
        return TransportException(TransportErrorKind.PERMISSION_DENIED, f"Permission denied for {path}", path)
    return TransportException(TransportErrorKind.UNREACHABLE, f"{path}: {error}", path)


class RemoteLogSource:
    """SFTP-backed implementation of list_files / read_from"""

    def __init__(self, connection_manager: ConnectionManager, operation_timeout: float = 60):
        self.connection_manager = connection_manager
        self.operation_timeout = operation_timeout
        self._resolved: Dict[Tuple[Tuple[int, str], str], str] = {}

    @asynccontextmanager
    async def _sftp(self, server: Dict[str, Any], path: str):
        guild_id, _ = server_key(server)
        try:
            async with self.connection_manager.get_sftp(guild_id, server) as sftp:
                yield sftp
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise translate_error(e, path)

    async def resolve_directory(self, server: Dict[str, Any], kind: str) -> str:
        """First existing directory for this kind of log, cached per server"""
        cache_key = (server_key(server), kind)
        if cache_key in self._resolved:
            return self._resolved[cache_key]

        candidates = candidate_paths(server, kind)
        async with self._sftp(server, candidates[0]) as sftp:
            for path in candidates:
                if await asyncio.wait_for(sftp.isdir(path), self.operation_timeout):
                    if path != candidates[0]:
                        logger.info(f"Resolved {kind} path for server {server.get('server_id')}: {path}")
                    self._resolved[cache_key] = path
                    return path

        raise TransportException(
            TransportErrorKind.NOT_FOUND,
            f"No {kind} directory found for server {server.get('server_id')}",
            candidates[0],
        )

    def forget_paths(self, server: Dict[str, Any]):
        key = server_key(server)
        for cache_key in [k for k in self._resolved if k[0] == key]:
            del self._resolved[cache_key]

    async def remote_path(self, server: Dict[str, Any], file_id: str) -> str:
        if file_id.startswith(DEATHLOG_PREFIX):
            root = await self.resolve_directory(server, DEATHLOG)
            return posixpath.join(root, file_id[len(DEATHLOG_PREFIX):])
        if file_id.startswith(SERVER_LOG_PREFIX):
            root = await self.resolve_directory(server, SERVER_LOG)
            return posixpath.join(root, file_id[len(SERVER_LOG_PREFIX):])
        raise ValueError(f"Unknown file id {file_id!r}")

    async def list_files(self, server: Dict[str, Any], kind: Optional[str] = None) -> List[RemoteFile]:
        """Files of interest, death logs sorted oldest to newest by name"""
        files: List[RemoteFile] = []
        if kind in (None, DEATHLOG):
            files.extend(await self._list_deathlogs(server))
        if kind in (None, SERVER_LOG):
            server_log = await self._stat_server_log(server)
            if server_log:
                files.append(server_log)
        return files

    async def _list_deathlogs(self, server: Dict[str, Any]) -> List[RemoteFile]:
        root = await self.resolve_directory(server, DEATHLOG)
        found: List[RemoteFile] = []

        async with self._sftp(server, root) as sftp:
            entries = await asyncio.wait_for(sftp.readdir(root), self.operation_timeout)
            for entry in entries:
                if entry.filename in ('.', '..'):
                    continue
                if entry.filename.endswith('.csv'):
                    found.append(RemoteFile(DEATHLOG_PREFIX + entry.filename, DEATHLOG, entry.attrs.size or 0))
                elif entry.attrs.permissions is not None and stat.S_ISDIR(entry.attrs.permissions):
                    subdir = posixpath.join(root, entry.filename)
                    for child in await asyncio.wait_for(sftp.readdir(subdir), self.operation_timeout):
                        if child.filename.endswith('.csv'):
                            file_id = f"{DEATHLOG_PREFIX}{entry.filename}/{child.filename}"
                            found.append(RemoteFile(file_id, DEATHLOG, child.attrs.size or 0))

        # Daily files carry their date in the name
        found.sort(key=lambda f: posixpath.basename(f.file_id))
        return found

    async def _stat_server_log(self, server: Dict[str, Any]) -> Optional[RemoteFile]:
        root = await self.resolve_directory(server, SERVER_LOG)
        path = posixpath.join(root, SERVER_LOG_NAME)
        async with self._sftp(server, path) as sftp:
            try:
                attrs = await asyncio.wait_for(sftp.stat(path), self.operation_timeout)
            except asyncssh.SFTPNoSuchFile:
                logger.debug(f"No {SERVER_LOG_NAME} in {root}")
                return None
        return RemoteFile(SERVER_LOG_PREFIX + SERVER_LOG_NAME, SERVER_LOG, attrs.size or 0)

    async def read_from(self, server: Dict[str, Any], file_id: str, offset: int,
                        length: Optional[int] = None) -> bytes:
        """Bytes from offset to end of file, or at most ``length`` bytes"""
        path = await self.remote_path(server, file_id)
        async with self._sftp(server, path) as sftp:
            async with sftp.open(path, 'rb') as remote_file:
                size = -1 if length is None else length
                return await asyncio.wait_for(remote_file.read(size, offset), self.operation_timeout)
