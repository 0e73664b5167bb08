"""Remote source database connector.

Wraps a SQLAlchemy engine pointed at the legacy installation. Every query
goes through :meth:`RemoteSource.fetch_all` so that connection failures and
statement failures surface as the engine's typed errors.
"""

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.sql.elements import TextClause

from wp_migration.client.exceptions import ConnectionError, QueryError, RunCancelled
from wp_migration.client.tables import TableResolver
from wp_migration.config import CredentialRecord
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PORT = 3306


class CancellationToken:
    """Cooperative cancellation flag shared between a run and its caller."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled("Run cancelled")


@dataclass(frozen=True)
class HostSpec:
    """Parsed host field of a credential record."""

    host: str
    port: int
    socket: str | None = None


def parse_host(raw_host: str, port: int | None = None, socket: str | None = None) -> HostSpec:
    """Parse ``host``, ``host:port``, ``[ipv6]:port``, ``host:/socket`` or ``/socket``.

    An explicit ``port``/``socket`` wins over anything embedded in the host.
    """
    raw = (raw_host or "").strip()
    host, parsed_port, parsed_socket = raw or "localhost", DEFAULT_PORT, None

    if raw.startswith("/"):
        host, parsed_socket = "localhost", raw
    elif raw.startswith("["):
        end = raw.find("]")
        if end != -1:
            host = raw[1:end] or "localhost"
            rest = raw[end + 1 :]
            if rest.startswith(":") and rest[1:].isdigit():
                parsed_port = int(rest[1:])
    elif ":" in raw:
        name, _, tail = raw.partition(":")
        host = name or "localhost"
        if tail.isdigit():
            parsed_port = int(tail)
        elif tail.startswith("/"):
            parsed_socket = tail

    return HostSpec(host=host, port=port or parsed_port, socket=socket or parsed_socket)


def build_source_url(record: CredentialRecord) -> URL:
    """Build the SQLAlchemy URL for a credential record."""
    spec = parse_host(record.host, record.port, record.socket)
    query: dict[str, str] = {"charset": record.charset} if record.charset else {}
    if spec.socket:
        query["unix_socket"] = spec.socket

    return URL.create(
        record.driver,
        username=record.user,
        password=record.password.get_secret_value() or None,
        host=spec.host,
        port=spec.port,
        database=record.database,
        query=query,
    )


class RemoteSource:
    """Read-only handle on the remote database.

    Holds the engine and the tenant table resolver; callers inject it into
    the query builder instead of reaching for a global connection.
    """

    def __init__(
        self,
        engine: Engine,
        tables: TableResolver,
        media_base_url: str = "",
        cancel: CancellationToken | None = None,
    ):
        self.engine = engine
        self.tables = tables
        self.media_base_url = media_base_url.rstrip("/")
        self.cancel = cancel

    @classmethod
    def from_credentials(
        cls,
        record: CredentialRecord,
        connect_timeout: int = 5,
        read_timeout: int = 60,
        cancel: CancellationToken | None = None,
    ) -> "RemoteSource":
        """Create a source from decrypted credentials.

        Raises:
            ConfigError: If host, database or user is missing
        """
        record.require_complete()

        connect_args: dict[str, Any] = {}
        if record.driver.startswith("mysql"):
            connect_args["connect_timeout"] = connect_timeout
        if record.driver.endswith("pymysql"):
            connect_args["read_timeout"] = read_timeout

        engine = create_engine(
            build_source_url(record),
            connect_args=connect_args,
            pool_pre_ping=True,
        )

        logger.info(
            "remote_source_initialized",
            host=record.host,
            database=record.database,
            prefix=record.table_prefix,
            multi_tenant=record.is_multi_tenant,
        )

        return cls(
            engine,
            TableResolver(record.table_prefix, record.is_multi_tenant),
            media_base_url=record.media_base_url,
            cancel=cancel,
        )

    def check_connection(self) -> None:
        """Open a connection and run ``SELECT 1``.

        Raises:
            ConnectionError: If the source is unreachable or the test query fails
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("remote_connection_failed", error=str(e))
            raise ConnectionError("Could not connect to the remote database") from e

        logger.info("remote_connection_ok")

    def fetch_all(
        self, statement: str | TextClause, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute a read statement and return rows as dicts.

        Raises:
            ConnectionError: If the connection could not be established
            QueryError: If the statement failed
            RunCancelled: If the cancellation token fired
        """
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

        clause = text(statement) if isinstance(statement, str) else statement

        try:
            conn = self.engine.connect()
        except (OperationalError, InterfaceError) as e:
            logger.error("remote_connection_failed", error=str(e))
            raise ConnectionError("Could not connect to the remote database") from e

        try:
            result = conn.execute(clause, dict(params or {}))
            return [dict(row) for row in result.mappings()]
        except DBAPIError as e:
            if e.connection_invalidated:
                raise ConnectionError("Lost connection to the remote database") from e
            logger.error("remote_query_failed", error=str(e.orig))
            raise QueryError("Remote query failed", sql=str(clause)) from e
        except SQLAlchemyError as e:
            logger.error("remote_query_failed", error=str(e))
            raise QueryError("Remote query failed", sql=str(clause)) from e
        finally:
            conn.close()

    def dispose(self) -> None:
        self.engine.dispose()
