"""
Database Manager - PostgreSQL schema and operations.

Stores cluster definitions, their observed status and conditions, and
reconciliation history.
"""

import asyncpg
import hashlib
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from migrate import run_migrations
from plugins.base import ObservedResourceStatus

logger = logging.getLogger(__name__)


class ResourceStatus(Enum):
    """Reconciliation status of a cluster record."""

    PENDING = "pending"
    RECONCILING = "reconciling"
    READY = "ready"
    FAILED = "failed"
    DELETING = "deleting"


class DatabaseManager:
    """Manages PostgreSQL database operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Cluster Methods ====================

    async def create_cluster(
        self,
        name: str,
        region: str,
        cluster_configuration: str,
        finalizers: Optional[List[str]] = None,
    ) -> int:
        """
        Create a new cluster record.

        Args:
            name: Cluster name (immutable identity)
            region: AWS region
            cluster_configuration: ParallelCluster configuration document
            finalizers: Initial finalizers list (defaults to ['pcluster'])
        """
        if finalizers is None:
            finalizers = ["pcluster"]

        spec_hash = self._calculate_spec_hash(region, cluster_configuration)

        async with self.pool.acquire() as conn:
            cluster_id = await conn.fetchval(
                """
                INSERT INTO clusters (
                    name, region, cluster_configuration, spec_hash,
                    status, next_reconcile_time, finalizers
                )
                VALUES ($1, $2, $3, $4, $5, NOW(), $6)
                RETURNING id
                """,
                name,
                region,
                cluster_configuration,
                spec_hash,
                ResourceStatus.PENDING.value,
                json.dumps(finalizers),
            )

            logger.info(f"Created cluster {name} ({region}) with ID {cluster_id}")
            return cluster_id

    async def update_cluster(
        self,
        cluster_id: int,
        region: Optional[str] = None,
        cluster_configuration: Optional[str] = None,
    ) -> int:
        """
        Update a cluster's desired state.

        The generation is only bumped when the desired state actually changes.

        Returns:
            The cluster's generation after the update.
        """
        async with self.pool.acquire() as conn:
            current = await conn.fetchrow(
                """
                SELECT region, cluster_configuration, spec_hash, generation
                FROM clusters WHERE id = $1
                """,
                cluster_id,
            )

            if not current:
                raise ValueError(f"Cluster {cluster_id} not found")

            new_region = region if region is not None else current["region"]
            new_configuration = (
                cluster_configuration
                if cluster_configuration is not None
                else current["cluster_configuration"]
            )
            new_spec_hash = self._calculate_spec_hash(new_region, new_configuration)

            if new_spec_hash == current["spec_hash"]:
                return current["generation"]

            new_generation = current["generation"] + 1
            await conn.execute(
                """
                UPDATE clusters
                SET region = $1,
                    cluster_configuration = $2,
                    spec_hash = $3,
                    generation = $4,
                    status = $5,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE id = $6
                """,
                new_region,
                new_configuration,
                new_spec_hash,
                new_generation,
                ResourceStatus.PENDING.value,
                cluster_id,
            )

            logger.info(f"Updated cluster {cluster_id} to generation {new_generation}")
            return new_generation

    async def delete_cluster(self, cluster_id: int):
        """Mark a cluster for deletion (soft delete)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE clusters
                SET status = $1,
                    deleted_at = COALESCE(deleted_at, NOW()),
                    next_reconcile_time = NOW()
                WHERE id = $2
                """,
                ResourceStatus.DELETING.value,
                cluster_id,
            )

            logger.info(f"Marked cluster {cluster_id} for deletion")

    async def get_cluster(self, cluster_id: int) -> Optional[Dict[str, Any]]:
        """Get a cluster by ID."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM clusters WHERE id = $1", cluster_id
            )
            if not row:
                return None
            return self._parse_cluster_row(row)

    async def get_cluster_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Get a cluster by name, including clusters pending deletion."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM clusters WHERE name = $1", name)
            if not row:
                return None
            return self._parse_cluster_row(row)

    async def list_clusters(
        self,
        status: Optional[str] = None,
        region: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List clusters with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM clusters WHERE 1=1"
            params = []
            param_count = 0

            if status:
                param_count += 1
                query += f" AND status = ${param_count}"
                params.append(status)

            if region:
                param_count += 1
                query += f" AND region = ${param_count}"
                params.append(region)

            param_count += 1
            query += f" ORDER BY created_at DESC LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_cluster_row(row) for row in rows]

    async def get_clusters_needing_reconciliation(
        self, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """
        Get clusters that need reconciliation.

        Similar to Kubernetes informers - finds clusters where desired state
        changed, a re-observation is due, or deletion was requested.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM clusters
                WHERE (
                    -- Never reconciled
                    last_reconcile_time IS NULL
                    -- Generation changed
                    OR generation > observed_generation
                    -- Scheduled for reconciliation (poll or retry)
                    OR next_reconcile_time <= NOW()
                    -- Marked for deletion
                    OR status = 'deleting'
                  )
                  AND status != 'reconciling'
                ORDER BY
                    CASE status
                        WHEN 'deleting' THEN 0
                        WHEN 'pending' THEN 1
                        WHEN 'failed' THEN 2
                        ELSE 3
                    END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )

            return [self._parse_cluster_row(row) for row in rows]

    async def update_cluster_status(
        self,
        cluster_id: int,
        status: ResourceStatus,
        message: Optional[str] = None,
        observed_generation: Optional[int] = None,
        poll_interval: int = 300,
    ):
        """
        Update the reconciliation status of a cluster.

        A ready cluster is re-observed after poll_interval seconds; failed
        clusters are rescheduled by requeue_failed_clusters().
        """
        async with self.pool.acquire() as conn:
            assignments = ["status = $1", "status_message = $2", "updated_at = NOW()"]
            params: List[Any] = [status.value, message]

            if observed_generation is not None:
                params.append(observed_generation)
                assignments.append(f"observed_generation = ${len(params)}")

            if status == ResourceStatus.READY:
                params.append(poll_interval)
                assignments.append(
                    f"next_reconcile_time = NOW() + INTERVAL '1 second' * ${len(params)}"
                )
                assignments.append("last_reconcile_time = NOW()")
                assignments.append("retry_count = 0")
            elif status == ResourceStatus.FAILED:
                assignments.append("last_reconcile_time = NOW()")
                assignments.append("retry_count = retry_count + 1")

            params.append(cluster_id)
            query = (
                f"UPDATE clusters SET {', '.join(assignments)} "
                f"WHERE id = ${len(params)}"
            )
            await conn.execute(query, *params)

    async def update_cluster_observation(
        self, cluster_id: int, observation: ObservedResourceStatus
    ) -> None:
        """Persist the status fields last reported by pcluster."""
        fields = observation.to_dict()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE clusters
                SET cluster_name = $1,
                    cloudformation_stack_arn = $2,
                    cluster_status = $3,
                    scheduler_type = $4,
                    last_updated_time = $5,
                    up_to_date = $6,
                    updated_at = NOW()
                WHERE id = $7
                """,
                fields["cluster_name"],
                fields["cloudformation_stack_arn"],
                fields["cluster_status"],
                fields["scheduler_type"],
                fields["last_updated_time"],
                fields["up_to_date"],
                cluster_id,
            )

    async def set_condition(
        self,
        cluster_id: int,
        condition_type: str,
        status: str,
        reason: str,
        message: str = "",
        observed_generation: Optional[int] = None,
    ) -> None:
        """
        Upsert a status condition.

        last_transition_time only moves when the condition's status changes.
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO cluster_conditions (
                    cluster_id, type, status, reason, message,
                    observed_generation, last_transition_time
                )
                VALUES ($1, $2, $3, $4, $5, $6, NOW())
                ON CONFLICT (cluster_id, type) DO UPDATE
                SET last_transition_time = CASE
                        WHEN cluster_conditions.status != EXCLUDED.status
                        THEN NOW()
                        ELSE cluster_conditions.last_transition_time
                    END,
                    status = EXCLUDED.status,
                    reason = EXCLUDED.reason,
                    message = EXCLUDED.message,
                    observed_generation = EXCLUDED.observed_generation
                """,
                cluster_id,
                condition_type,
                status,
                reason,
                message,
                observed_generation,
            )

    async def get_conditions(self, cluster_id: int) -> List[Dict[str, Any]]:
        """Get all conditions of a cluster."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT type, status, reason, message,
                       observed_generation, last_transition_time
                FROM cluster_conditions
                WHERE cluster_id = $1
                ORDER BY type
                """,
                cluster_id,
            )
            return [dict(row) for row in rows]

    async def record_reconciliation(
        self,
        cluster_id: int,
        success: bool,
        operation: str,
        error_message: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        trigger_reason: Optional[str] = None,
    ):
        """Record a reconciliation attempt in history."""
        async with self.pool.acquire() as conn:
            generation = await conn.fetchval(
                "SELECT generation FROM clusters WHERE id = $1", cluster_id
            )

            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    cluster_id, generation, success, operation,
                    error_message, duration_seconds, trigger_reason
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                cluster_id,
                generation,
                success,
                operation,
                error_message,
                duration_seconds,
                trigger_reason,
            )

    async def requeue_failed_clusters(
        self,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ):
        """
        Requeue failed clusters with exponential backoff and jitter.

        Args:
            base_delay: Base delay in seconds (default 60)
            max_delay: Maximum delay in seconds (default 3600 = 1 hour)
            jitter_factor: Jitter factor ±X (default 0.1 = ±10%)
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE clusters
                SET next_reconcile_time = last_reconcile_time + (
                    INTERVAL '1 second' * LEAST(
                        $1 * POWER(2, LEAST(retry_count - 1, 10)),
                        $2
                    ) * (1 + (random() * 2 - 1) * $3)
                )
                WHERE status = 'failed'
                  AND (next_reconcile_time IS NULL
                       OR next_reconcile_time < last_reconcile_time)
                """,
                base_delay,
                max_delay,
                jitter_factor,
            )

    async def reset_interrupted_reconciliations(self) -> int:
        """
        Return clusters left in 'reconciling' by a previous run to 'pending'.

        The reconciliation query skips 'reconciling' rows, so a pass cut off
        by a crash or shutdown would otherwise never be picked up again.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE clusters
                SET status = 'pending',
                    status_message = 'Reconciliation interrupted',
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE status = 'reconciling'
                RETURNING name
                """
            )
            for row in rows:
                logger.warning(f"Reset interrupted reconciliation of {row['name']}")
            return len(rows)

    async def hard_delete_cluster(self, cluster_id: int) -> bool:
        """
        Permanently delete a cluster record.

        Only succeeds if the cluster has been soft-deleted and all
        finalizers have been removed.
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM clusters
                WHERE id = $1
                  AND deleted_at IS NOT NULL
                  AND finalizers = '[]'::jsonb
                RETURNING id
                """,
                cluster_id,
            )
            if result:
                logger.info(f"Hard-deleted cluster {cluster_id}")
                return True
            return False

    async def remove_finalizer(self, cluster_id: int, finalizer: str) -> None:
        """Remove a finalizer from a cluster."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE clusters
                SET finalizers = COALESCE(
                        (SELECT jsonb_agg(elem)
                         FROM jsonb_array_elements(finalizers) AS elem
                         WHERE elem #>> '{}' != $2),
                        '[]'::jsonb
                    ),
                    updated_at = NOW()
                WHERE id = $1
                """,
                cluster_id,
                finalizer,
            )

    async def get_finalizers(self, cluster_id: int) -> List[str]:
        """Get the finalizers list for a cluster (empty if not found)."""
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                "SELECT finalizers FROM clusters WHERE id = $1",
                cluster_id,
            )
            if result is None:
                return []
            return json.loads(result) if isinstance(result, str) else result

    async def mark_cluster_for_reconciliation(self, cluster_id: int):
        """Manually trigger reconciliation for a cluster."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE clusters SET next_reconcile_time = NOW() WHERE id = $1",
                cluster_id,
            )

    async def get_reconciliation_history(
        self, cluster_id: int, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get reconciliation history for a cluster."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE cluster_id = $1
                ORDER BY reconcile_time DESC
                LIMIT $2
                """,
                cluster_id,
                limit,
            )

            return [dict(row) for row in rows]

    def _parse_cluster_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Convert a cluster row to a dict, decoding the finalizers list."""
        result = dict(row)
        result["finalizers"] = (
            json.loads(result["finalizers"])
            if isinstance(result.get("finalizers"), str)
            else result.get("finalizers", []) or []
        )
        return result

    def _calculate_spec_hash(self, region: str, cluster_configuration: str) -> str:
        """Hash the desired state for change detection."""
        spec_string = json.dumps(
            {"region": region, "clusterConfiguration": cluster_configuration},
            sort_keys=True,
        )
        return hashlib.sha256(spec_string.encode()).hexdigest()
