"""Unit tests for db.py - Database manager."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from db import DatabaseManager, ResourceStatus
from plugins.base import ObservedResourceStatus, RemoteLifecycleStatus


@pytest.fixture
def db():
    """A DatabaseManager that is not connected."""
    return DatabaseManager(
        host="localhost",
        port=5432,
        database="testdb",
        user="testuser",
        password="testpass",
    )


class TestResourceStatus:
    """Tests for ResourceStatus enum."""

    def test_status_values(self):
        """Test status enum values."""
        assert ResourceStatus.PENDING.value == "pending"
        assert ResourceStatus.RECONCILING.value == "reconciling"
        assert ResourceStatus.READY.value == "ready"
        assert ResourceStatus.FAILED.value == "failed"
        assert ResourceStatus.DELETING.value == "deleting"


class TestDatabaseManager:
    """Tests for DatabaseManager class."""

    def test_init(self):
        """Test database manager initialization."""
        db = DatabaseManager(
            host="localhost",
            port=5432,
            database="testdb",
            user="testuser",
            password="testpass",
            min_pool_size=3,
            max_pool_size=10,
        )
        assert db.host == "localhost"
        assert db.database == "testdb"
        assert db.min_pool_size == 3
        assert db.max_pool_size == 10
        assert db.pool is None

    def test_init_default_pool_sizes(self, db):
        """Test default pool sizes."""
        assert db.min_pool_size == 5
        assert db.max_pool_size == 20

    def test_ensure_connected_raises_when_not_connected(self, db):
        """Test _ensure_connected raises when pool is None."""
        with pytest.raises(RuntimeError) as exc_info:
            db._ensure_connected()
        assert "Database not connected" in str(exc_info.value)

    def test_calculate_spec_hash(self, db):
        """Test the hash covers both region and configuration."""
        hash1 = db._calculate_spec_hash("eu-west-1", "Region: eu-west-1\n")
        hash2 = db._calculate_spec_hash("eu-west-1", "Region: eu-west-1\n")
        hash3 = db._calculate_spec_hash("us-east-1", "Region: eu-west-1\n")
        hash4 = db._calculate_spec_hash("eu-west-1", "Region: us-east-1\n")

        assert hash1 == hash2
        assert hash1 != hash3
        assert hash1 != hash4
        assert len(hash1) == 64

    def test_parse_cluster_row_decodes_finalizers(self, db):
        """Test finalizers stored as JSON text are decoded."""
        row = {"id": 1, "name": "test", "finalizers": '["pcluster"]'}

        result = db._parse_cluster_row(row)

        assert result == {"id": 1, "name": "test", "finalizers": ["pcluster"]}

    def test_parse_cluster_row_missing_finalizers(self, db):
        """Test a NULL finalizers column becomes an empty list."""
        result = db._parse_cluster_row({"id": 1, "finalizers": None})
        assert result["finalizers"] == []

    def test_parse_cluster_row_decoded_finalizers(self, db):
        """Test already decoded finalizers are kept."""
        result = db._parse_cluster_row({"id": 1, "finalizers": ["a", "b"]})
        assert result["finalizers"] == ["a", "b"]


@pytest.mark.asyncio
class TestDatabaseManagerAsync:
    """Async tests for DatabaseManager."""

    async def test_connect(self, db):
        """Test creating the connection pool."""
        mock_pool = AsyncMock()
        with patch(
            "db.asyncpg.create_pool", AsyncMock(return_value=mock_pool)
        ) as create_pool:
            await db.connect()

        assert db.pool is mock_pool
        kwargs = create_pool.call_args.kwargs
        assert kwargs["database"] == "testdb"
        assert kwargs["min_size"] == 5
        assert kwargs["max_size"] == 20

    async def test_close(self, db):
        """Test closing the connection pool."""
        db.pool = AsyncMock()
        await db.close()
        db.pool.close.assert_called_once()

    async def test_close_without_pool(self, db):
        """Test close is a no-op when never connected."""
        await db.close()

    async def test_initialize_schema_requires_connection(self, db):
        """Test migrations are not attempted without a pool."""
        with pytest.raises(RuntimeError):
            await db.initialize_schema()

    async def test_initialize_schema_runs_migrations(self, db):
        """Test initialize_schema applies migrations on the pool."""
        db.pool = AsyncMock()
        with patch("db.run_migrations", AsyncMock(return_value=1)) as run:
            await db.initialize_schema()
        run.assert_called_once_with(db.pool)

    async def test_create_cluster(self, db_with_connection, mock_connection):
        """Test creating a cluster stores it pending with the pcluster finalizer."""
        mock_connection.fetchval.return_value = 7

        cluster_id = await db_with_connection.create_cluster(
            "test-cluster", "eu-west-1", "Region: eu-west-1\n"
        )

        assert cluster_id == 7
        args = mock_connection.fetchval.call_args.args
        assert "INSERT INTO clusters" in args[0]
        assert args[1:4] == ("test-cluster", "eu-west-1", "Region: eu-west-1\n")
        assert args[4] == db_with_connection._calculate_spec_hash(
            "eu-west-1", "Region: eu-west-1\n"
        )
        assert args[5] == "pending"
        assert json.loads(args[6]) == ["pcluster"]

    async def test_create_cluster_custom_finalizers(
        self, db_with_connection, mock_connection
    ):
        """Test explicit finalizers replace the default."""
        mock_connection.fetchval.return_value = 1

        await db_with_connection.create_cluster(
            "c", "eu-west-1", "x: 1\n", finalizers=[]
        )

        assert json.loads(mock_connection.fetchval.call_args.args[6]) == []

    async def test_update_cluster_bumps_generation(
        self, db_with_connection, mock_connection
    ):
        """Test a changed configuration bumps the generation."""
        mock_connection.fetchrow.return_value = {
            "region": "eu-west-1",
            "cluster_configuration": "old: 1\n",
            "spec_hash": db_with_connection._calculate_spec_hash(
                "eu-west-1", "old: 1\n"
            ),
            "generation": 3,
        }

        generation = await db_with_connection.update_cluster(
            1, cluster_configuration="new: 1\n"
        )

        assert generation == 4
        args = mock_connection.execute.call_args.args
        assert "UPDATE clusters" in args[0]
        assert args[1] == "eu-west-1"
        assert args[2] == "new: 1\n"
        assert args[4] == 4
        assert args[5] == "pending"
        assert args[6] == 1

    async def test_update_cluster_unchanged(self, db_with_connection, mock_connection):
        """Test an identical configuration keeps the generation."""
        mock_connection.fetchrow.return_value = {
            "region": "eu-west-1",
            "cluster_configuration": "same: 1\n",
            "spec_hash": db_with_connection._calculate_spec_hash(
                "eu-west-1", "same: 1\n"
            ),
            "generation": 3,
        }

        generation = await db_with_connection.update_cluster(
            1, cluster_configuration="same: 1\n"
        )

        assert generation == 3
        mock_connection.execute.assert_not_called()

    async def test_update_cluster_not_found(self, db_with_connection, mock_connection):
        """Test updating a missing cluster raises ValueError."""
        mock_connection.fetchrow.return_value = None

        with pytest.raises(ValueError, match="not found"):
            await db_with_connection.update_cluster(99, cluster_configuration="x")

    async def test_delete_cluster(self, db_with_connection, mock_connection):
        """Test deletion is a soft delete that keeps the first timestamp."""
        await db_with_connection.delete_cluster(5)

        query, status, cluster_id = mock_connection.execute.call_args.args
        assert "COALESCE(deleted_at, NOW())" in query
        assert status == "deleting"
        assert cluster_id == 5

    async def test_get_cluster(self, db_with_connection, mock_connection):
        """Test fetching a cluster by ID."""
        mock_connection.fetchrow.return_value = {
            "id": 1,
            "name": "test-cluster",
            "finalizers": '["pcluster"]',
        }

        cluster = await db_with_connection.get_cluster(1)

        assert cluster["finalizers"] == ["pcluster"]

    async def test_get_cluster_by_name_missing(
        self, db_with_connection, mock_connection
    ):
        """Test a missing name returns None."""
        mock_connection.fetchrow.return_value = None

        assert await db_with_connection.get_cluster_by_name("nope") is None
        assert mock_connection.fetchrow.call_args.args[1] == "nope"

    async def test_list_clusters_with_filters(
        self, db_with_connection, mock_connection
    ):
        """Test filters become numbered query parameters."""
        mock_connection.fetch.return_value = []

        await db_with_connection.list_clusters(
            status="ready", region="eu-west-1", limit=5
        )

        args = mock_connection.fetch.call_args.args
        assert "status = $1" in args[0]
        assert "region = $2" in args[0]
        assert "LIMIT $3" in args[0]
        assert args[1:] == ("ready", "eu-west-1", 5)

    async def test_list_clusters_no_filters(self, db_with_connection, mock_connection):
        """Test listing without filters only binds the limit."""
        mock_connection.fetch.return_value = [{"id": 1, "finalizers": "[]"}]

        clusters = await db_with_connection.list_clusters()

        assert clusters == [{"id": 1, "finalizers": []}]
        assert mock_connection.fetch.call_args.args[1:] == (100,)

    async def test_get_clusters_needing_reconciliation(
        self, db_with_connection, mock_connection
    ):
        """Test the work queue query skips clusters already reconciling."""
        mock_connection.fetch.return_value = []

        await db_with_connection.get_clusters_needing_reconciliation(limit=4)

        query, limit = mock_connection.fetch.call_args.args
        assert "status != 'reconciling'" in query
        assert "next_reconcile_time <= NOW()" in query
        assert limit == 4

    async def test_update_status_ready_schedules_poll(
        self, db_with_connection, mock_connection
    ):
        """Test READY records the observed generation and the next poll."""
        await db_with_connection.update_cluster_status(
            1,
            ResourceStatus.READY,
            message="Done",
            observed_generation=2,
            poll_interval=120,
        )

        args = mock_connection.execute.call_args.args
        query = args[0]
        assert "observed_generation = $3" in query
        assert "next_reconcile_time = NOW() + INTERVAL '1 second' * $4" in query
        assert "retry_count = 0" in query
        assert "WHERE id = $5" in query
        assert args[1:] == ("ready", "Done", 2, 120, 1)

    async def test_update_status_failed_counts_retry(
        self, db_with_connection, mock_connection
    ):
        """Test FAILED increments the retry count."""
        await db_with_connection.update_cluster_status(
            1, ResourceStatus.FAILED, message="boom"
        )

        args = mock_connection.execute.call_args.args
        assert "retry_count = retry_count + 1" in args[0]
        assert "next_reconcile_time" not in args[0]
        assert args[1:] == ("failed", "boom", 1)

    async def test_update_status_reconciling(self, db_with_connection, mock_connection):
        """Test other statuses only touch status and message."""
        await db_with_connection.update_cluster_status(
            1, ResourceStatus.RECONCILING, message="Starting reconciliation"
        )

        args = mock_connection.execute.call_args.args
        assert "retry_count" not in args[0]
        assert "last_reconcile_time" not in args[0]
        assert args[1:] == ("reconciling", "Starting reconciliation", 1)

    async def test_update_cluster_observation(
        self, db_with_connection, mock_connection
    ):
        """Test observed status fields are written to their columns."""
        observation = ObservedResourceStatus(
            cluster_name="test-cluster",
            cloudformation_stack_arn="arn:aws:cloudformation:stack",
            cluster_status=RemoteLifecycleStatus.CREATE_COMPLETE,
            scheduler_type="slurm",
            last_updated_time="2023-03-14T09:12:41.350Z",
            up_to_date=True,
        )

        await db_with_connection.update_cluster_observation(1, observation)

        args = mock_connection.execute.call_args.args
        assert args[1:] == (
            "test-cluster",
            "arn:aws:cloudformation:stack",
            "CREATE_COMPLETE",
            "slurm",
            "2023-03-14T09:12:41.350Z",
            True,
            1,
        )

    async def test_set_condition(self, db_with_connection, mock_connection):
        """Test conditions are upserted per (cluster, type)."""
        await db_with_connection.set_condition(
            1, "Ready", "True", "Available", "ok", 2
        )

        args = mock_connection.execute.call_args.args
        assert "ON CONFLICT (cluster_id, type)" in args[0]
        assert args[1:] == (1, "Ready", "True", "Available", "ok", 2)

    async def test_get_conditions(self, db_with_connection, mock_connection):
        """Test conditions are returned as dicts."""
        mock_connection.fetch.return_value = [
            {"type": "Ready", "status": "True", "reason": "Available"}
        ]

        conditions = await db_with_connection.get_conditions(1)

        assert conditions[0]["type"] == "Ready"

    async def test_record_reconciliation(self, db_with_connection, mock_connection):
        """Test history rows capture the generation at the time of the pass."""
        mock_connection.fetchval.return_value = 3

        await db_with_connection.record_reconciliation(
            cluster_id=1,
            success=False,
            operation="create",
            error_message="boom",
            duration_seconds=1.5,
            trigger_reason="initial",
        )

        args = mock_connection.execute.call_args.args
        assert "INSERT INTO reconciliation_history" in args[0]
        assert args[1:] == (1, 3, False, "create", "boom", 1.5, "initial")

    async def test_requeue_failed_clusters(self, db_with_connection, mock_connection):
        """Test backoff parameters are bound in order."""
        await db_with_connection.requeue_failed_clusters(
            base_delay=30, max_delay=600, jitter_factor=0.2
        )

        args = mock_connection.execute.call_args.args
        assert "WHERE status = 'failed'" in args[0]
        assert args[1:] == (30, 600, 0.2)

    async def test_reset_interrupted_reconciliations(
        self, db_with_connection, mock_connection
    ):
        """Test clusters stuck in reconciling go back to pending."""
        mock_connection.fetch.return_value = [{"name": "a"}, {"name": "b"}]

        assert await db_with_connection.reset_interrupted_reconciliations() == 2

        query = mock_connection.fetch.call_args.args[0]
        assert "SET status = 'pending'" in query
        assert "WHERE status = 'reconciling'" in query

    async def test_hard_delete_cluster(self, db_with_connection, mock_connection):
        """Test hard delete reports whether a row was removed."""
        mock_connection.fetchval.return_value = 1
        assert await db_with_connection.hard_delete_cluster(1) is True

        query = mock_connection.fetchval.call_args.args[0]
        assert "deleted_at IS NOT NULL" in query
        assert "finalizers = '[]'::jsonb" in query

    async def test_hard_delete_cluster_blocked(
        self, db_with_connection, mock_connection
    ):
        """Test hard delete returns False while finalizers remain."""
        mock_connection.fetchval.return_value = None
        assert await db_with_connection.hard_delete_cluster(1) is False

    async def test_remove_finalizer(self, db_with_connection, mock_connection):
        """Test removing a single finalizer."""
        await db_with_connection.remove_finalizer(1, "pcluster")

        args = mock_connection.execute.call_args.args
        assert "jsonb_agg" in args[0]
        assert args[1:] == (1, "pcluster")

    async def test_get_finalizers(self, db_with_connection, mock_connection):
        """Test finalizers are decoded from JSON text."""
        mock_connection.fetchval.return_value = '["pcluster", "backup"]'
        assert await db_with_connection.get_finalizers(1) == ["pcluster", "backup"]

    async def test_get_finalizers_missing_cluster(
        self, db_with_connection, mock_connection
    ):
        """Test a missing cluster has no finalizers."""
        mock_connection.fetchval.return_value = None
        assert await db_with_connection.get_finalizers(1) == []

    async def test_mark_cluster_for_reconciliation(
        self, db_with_connection, mock_connection
    ):
        """Test a manual trigger schedules the cluster now."""
        await db_with_connection.mark_cluster_for_reconciliation(4)

        query, cluster_id = mock_connection.execute.call_args.args
        assert "next_reconcile_time = NOW()" in query
        assert cluster_id == 4

    async def test_get_reconciliation_history(
        self, db_with_connection, mock_connection
    ):
        """Test history is returned newest first with a limit."""
        mock_connection.fetch.return_value = [{"id": 2}, {"id": 1}]

        history = await db_with_connection.get_reconciliation_history(1, limit=2)

        assert history == [{"id": 2}, {"id": 1}]
        args = mock_connection.fetch.call_args.args
        assert "ORDER BY reconcile_time DESC" in args[0]
        assert args[1:] == (1, 2)
