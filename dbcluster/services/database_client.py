"""
Per-node database client.

The reconcile phases only need a handful of replication capabilities from
each node. ``DatabaseClient`` is that contract; ``SQLDatabaseClient`` fulfils
it over SQLAlchemy's asyncio engine with the aiomysql driver.

Errors are split in two so callers can tell "the node is down" (skip it,
keep the last known state) from "the node answered with an error".
"""
import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol, Union

from sqlalchemy import URL, TextClause, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from dbcluster.config.logging import get_logger
from dbcluster.exceptions import (
    DatabaseApplicationError,
    DatabaseUnreachableError,
    MissingSecretError,
    NotFoundError,
)
from dbcluster.models.cluster import Cluster
from dbcluster.services.object_store import ObjectStore

logger = get_logger(__name__)

# MySQL client-side error codes (CR_*) live in 2000-2999: connection refused,
# lost connection, unknown host and friends.
_CLIENT_ERROR_RANGE = range(2000, 3000)


@dataclass(frozen=True)
class ReplicaErrors:
    """Last IO and SQL thread error codes reported by a replica."""

    io_errno: int = 0
    sql_errno: int = 0

    @property
    def healthy(self) -> bool:
        return self.io_errno == 0 and self.sql_errno == 0


@dataclass(frozen=True)
class ReplicaStatus:
    """Replication thread state of a replica, from ``SHOW SLAVE STATUS``."""

    io_running: bool
    sql_running: bool
    # Gtid_IO_Pos: the last GTID received into the relay log.
    io_position: str = ""
    errors: ReplicaErrors = field(default_factory=ReplicaErrors)


class DatabaseClient(Protocol):
    async def is_replica(self) -> bool: ...

    async def has_connected_replicas(self) -> bool: ...

    async def replica_errors(self) -> ReplicaErrors: ...

    async def replica_status(self) -> Optional[ReplicaStatus]:
        """Thread state and received position; None when replication is not configured."""
        ...

    async def replication_position(self) -> str:
        """Current GTID position, e.g. ``0-10-42`` (may list several domains)."""
        ...

    async def gtid_domain_id(self) -> int: ...

    async def user_exists(self, user: str, host: str) -> bool: ...

    async def promote_to_primary(self) -> None: ...

    async def replicate_from(self, primary_host: str, port: int) -> None: ...

    async def close(self) -> None: ...


class DatabaseClientFactory(Protocol):
    async def __call__(
        self, cluster: Cluster, ordinal: int, timeout: Optional[timedelta] = None
    ) -> DatabaseClient: ...


def node_host(cluster: Cluster, ordinal: int) -> str:
    """Stable DNS name of a node behind the headless service."""
    return f"{cluster.pod_name(ordinal)}.{cluster.name}-internal.{cluster.namespace}.svc.cluster.local"


def _is_unreachable(error: DBAPIError) -> bool:
    if not isinstance(error, OperationalError):
        return False
    args = getattr(error.orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0] in _CLIENT_ERROR_RANGE
    return True


class SQLDatabaseClient:
    """DatabaseClient for a single MariaDB node."""

    def __init__(
        self,
        node: str,
        host: str,
        port: int,
        user: str,
        password: str,
        timeout: timedelta,
    ):
        self.node = node
        self.port = port
        self.timeout = timeout
        self._user = user
        self._password = password
        url = URL.create(
            "mysql+aiomysql",
            username=user,
            password=password,
            host=host,
            port=port,
        )
        self.engine = create_async_engine(
            url,
            poolclass=NullPool,
            connect_args={"connect_timeout": max(1, int(timeout.total_seconds()))},
        )

    async def _run(self, statements: List[TextClause]) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        async with self.engine.connect() as conn:
            for statement in statements:
                result = await conn.execute(statement)
                if result.returns_rows:
                    rows = [dict(row) for row in result.mappings()]
            await conn.commit()
        return rows

    async def _execute(self, *statements: Union[str, TextClause]) -> List[Dict[str, Any]]:
        clauses = [text(s) if isinstance(s, str) else s for s in statements]
        try:
            return await asyncio.wait_for(self._run(clauses), timeout=self.timeout.total_seconds())
        except asyncio.TimeoutError as e:
            raise DatabaseUnreachableError(self.node, "timed out") from e
        except DBAPIError as e:
            if _is_unreachable(e):
                raise DatabaseUnreachableError(self.node, str(e.orig)) from e
            raise DatabaseApplicationError(self.node, str(e.orig)) from e
        except OSError as e:
            raise DatabaseUnreachableError(self.node, str(e)) from e

    async def is_replica(self) -> bool:
        return bool(await self._execute("SHOW SLAVE STATUS"))

    async def has_connected_replicas(self) -> bool:
        return bool(await self._execute("SHOW SLAVE HOSTS"))

    async def replica_status(self) -> Optional[ReplicaStatus]:
        rows = await self._execute("SHOW SLAVE STATUS")
        if not rows:
            return None
        row = rows[0]
        return ReplicaStatus(
            io_running=row.get("Slave_IO_Running") == "Yes",
            sql_running=row.get("Slave_SQL_Running") == "Yes",
            io_position=str(row.get("Gtid_IO_Pos") or ""),
            errors=ReplicaErrors(
                io_errno=int(row.get("Last_IO_Errno") or 0),
                sql_errno=int(row.get("Last_SQL_Errno") or 0),
            ),
        )

    async def replica_errors(self) -> ReplicaErrors:
        status = await self.replica_status()
        return status.errors if status is not None else ReplicaErrors()

    async def replication_position(self) -> str:
        rows = await self._execute("SELECT @@global.gtid_current_pos AS position")
        return str(rows[0]["position"] or "") if rows else ""

    async def gtid_domain_id(self) -> int:
        rows = await self._execute("SELECT @@global.gtid_domain_id AS domain_id")
        return int(rows[0]["domain_id"]) if rows else 0

    async def user_exists(self, user: str, host: str) -> bool:
        rows = await self._execute(
            text("SELECT COUNT(*) AS users FROM mysql.user WHERE user=:user AND host=:host").bindparams(
                user=user, host=host
            )
        )
        return bool(rows and rows[0]["users"])

    async def promote_to_primary(self) -> None:
        await self._execute(
            "STOP ALL SLAVES",
            "RESET SLAVE ALL",
            "SET GLOBAL read_only=0",
        )
        logger.info("node_promoted_to_primary", node=self.node)

    async def replicate_from(self, primary_host: str, port: int) -> None:
        await self._execute(
            "STOP ALL SLAVES",
            "SET GLOBAL read_only=1",
            text(
                "CHANGE MASTER TO MASTER_HOST=:host, MASTER_PORT=:port, MASTER_USER=:user, "
                "MASTER_PASSWORD=:password, MASTER_USE_GTID=current_pos, MASTER_CONNECT_RETRY=10"
            ).bindparams(host=primary_host, port=port, user=self._user, password=self._password),
            "START SLAVE",
        )
        logger.info("node_replicating", node=self.node, primary=primary_host)

    async def close(self) -> None:
        await self.engine.dispose()


class SQLDatabaseClientFactory:
    """Builds SQLDatabaseClients using the cluster's root credentials."""

    def __init__(self, store: ObjectStore, timeout: timedelta, user: str = "root"):
        self.store = store
        self.timeout = timeout
        self.user = user

    async def __call__(
        self, cluster: Cluster, ordinal: int, timeout: Optional[timedelta] = None
    ) -> SQLDatabaseClient:
        password = ""
        ref = cluster.spec.root_password_secret_key_ref
        if ref is not None:
            try:
                password = await self.store.get_secret_value(cluster.namespace, ref.name, ref.key)
            except NotFoundError as e:
                # Surfaced as a failed phase; only a new Secret or spec change fixes it.
                raise MissingSecretError(ref.name, ref.key) from e
        return SQLDatabaseClient(
            node=cluster.pod_name(ordinal),
            host=node_host(cluster, ordinal),
            port=cluster.spec.port,
            user=self.user,
            password=password,
            timeout=timeout or self.timeout,
        )
