"""
SFTP Connection Pool
Per-server asyncssh connection reuse with a circuit breaker
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncssh

from killfeed.utils.exceptions import TransportErrorKind, TransportException

logger = logging.getLogger(__name__)

CONNECTION_STRATEGIES = (
    {
        'name': 'modern_secure',
        'kex_algs': [
            'curve25519-sha256', 'curve25519-sha256@libssh.org',
            'ecdh-sha2-nistp256', 'ecdh-sha2-nistp384', 'ecdh-sha2-nistp521',
            'diffie-hellman-group16-sha512', 'diffie-hellman-group18-sha512',
            'diffie-hellman-group14-sha256'
        ]
    },
    {
        'name': 'legacy_compatible',
        'kex_algs': [
            'diffie-hellman-group14-sha1', 'diffie-hellman-group1-sha1',
            'diffie-hellman-group-exchange-sha256', 'diffie-hellman-group-exchange-sha1'
        ]
    },
)


class ServerConnectionPool:
    """Connection pool for a single server"""

    def __init__(self, server_config: Dict[str, Any], max_connections: int = 2, connect_timeout: float = 30):
        self.server_config = server_config
        self.max_connections = max_connections
        self.connect_timeout = connect_timeout
        self.active_connections: List[asyncssh.SSHClientConnection] = []
        self.available_connections: asyncio.Queue = asyncio.Queue()
        self.failed_attempts = 0
        self.last_failure_time: Optional[datetime] = None
        self.circuit_breaker_open = False
        self._lock = asyncio.Lock()

    @property
    def host(self) -> str:
        return self.server_config.get('host', 'localhost')

    async def get_connection(self) -> asyncssh.SSHClientConnection:
        async with self._lock:
            if self.circuit_breaker_open:
                if not self._should_retry():
                    raise TransportException(TransportErrorKind.UNREACHABLE, f"Circuit breaker open for {self.host}")
                self.circuit_breaker_open = False
                logger.info(f"Circuit breaker reset for {self.host}")

            while not self.available_connections.empty():
                conn = self.available_connections.get_nowait()
                if not conn.is_closed():
                    return conn
                self._discard(conn)

            if len(self.active_connections) >= self.max_connections:
                raise TransportException(TransportErrorKind.UNREACHABLE, f"Connection limit reached for {self.host}")

            conn = await self._create_connection()
            self.active_connections.append(conn)
            return conn

    async def return_connection(self, conn: asyncssh.SSHClientConnection):
        if conn.is_closed():
            self._discard(conn)
        else:
            await self.available_connections.put(conn)

    def _discard(self, conn):
        if conn in self.active_connections:
            self.active_connections.remove(conn)

    async def _create_connection(self) -> asyncssh.SSHClientConnection:
        """Try each key exchange strategy until one connects"""
        last_error: Optional[BaseException] = None

        for strategy in CONNECTION_STRATEGIES:
            try:
                conn = await asyncio.wait_for(
                    asyncssh.connect(
                        self.host,
                        port=self.server_config.get('port', 22),
                        username=self.server_config.get('username', ''),
                        password=self.server_config.get('password', ''),
                        known_hosts=None,
                        client_keys=None,
                        preferred_auth='password,keyboard-interactive',
                        kex_algs=strategy['kex_algs'],
                    ),
                    timeout=self.connect_timeout,
                )
                logger.info(f"✅ SFTP connected using {strategy['name']} to {self.host}")
                self.failed_attempts = 0
                return conn

            except asyncssh.PermissionDenied as e:
                self._record_failure()
                raise TransportException(TransportErrorKind.PERMISSION_DENIED, f"Authentication failed for {self.host}: {e}")
            except (asyncio.TimeoutError, asyncssh.Error, OSError) as e:
                logger.warning(f"Connection error with {strategy['name']} for {self.host}: {e}")
                last_error = e
                continue

        self._record_failure()
        raise TransportException(TransportErrorKind.UNREACHABLE, f"All connection strategies failed for {self.host}: {last_error}")

    def _record_failure(self):
        self.failed_attempts += 1
        self.last_failure_time = datetime.now(timezone.utc)
        if self.failed_attempts >= 3:
            self.circuit_breaker_open = True
            logger.error(f"Circuit breaker opened for {self.host} after {self.failed_attempts} failures")

    def _should_retry(self) -> bool:
        if not self.last_failure_time:
            return True
        time_since_failure = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
        return time_since_failure > (30 * min(self.failed_attempts, 10))

    async def close_all(self):
        async with self._lock:
            for conn in self.active_connections:
                conn.close()
            self.active_connections.clear()
            while not self.available_connections.empty():
                self.available_connections.get_nowait()


class ConnectionManager:
    """Connection pools for every server, keyed by guild, login and host"""

    def __init__(self, max_connections_per_server: int = 2):
        self.max_connections_per_server = max_connections_per_server
        self.guild_pools: Dict[int, Dict[str, ServerConnectionPool]] = {}

    def _pool_for(self, guild_id: int, server_config: Dict[str, Any]) -> ServerConnectionPool:
        # Servers on a shared host can log in as different accounts
        server_key = (
            f"{server_config.get('username', '')}@{server_config.get('host')}:{server_config.get('port', 22)}"
        )
        guild_pools = self.guild_pools.setdefault(guild_id, {})
        if server_key not in guild_pools:
            guild_pools[server_key] = ServerConnectionPool(server_config, self.max_connections_per_server)
        return guild_pools[server_key]

    @asynccontextmanager
    async def get_sftp(self, guild_id: int, server_config: Dict[str, Any]):
        """Yield an SFTP client on a pooled connection"""
        pool = self._pool_for(guild_id, server_config)
        conn = await pool.get_connection()
        try:
            try:
                sftp = await conn.start_sftp_client()
            except (asyncssh.Error, OSError) as e:
                conn.close()
                raise TransportException(TransportErrorKind.UNREACHABLE, f"SFTP session failed for {pool.host}: {e}")
            async with sftp:
                yield sftp
        finally:
            await pool.return_connection(conn)

    async def stop(self):
        for guild_pools in self.guild_pools.values():
            for pool in guild_pools.values():
                await pool.close_all()
        self.guild_pools.clear()
        logger.info("Connection manager stopped")
