"""
HTTP Input Plugin - REST API for cluster management.

This plugin provides a FastAPI-based REST API for declaring ParallelCluster
clusters, inspecting their observed state and triggering reconciliation.
Clusters are addressed by name, which is their immutable identity.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator

from plugins.base import ClusterParameters
from plugins.inputs.base import ClusterCallback, InputPlugin
from validation import (
    CLUSTER_NAME_PATTERN,
    validate_cluster_parameters,
    validate_configuration_document,
)

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(CLUSTER_NAME_PATTERN)
MAX_CONFIGURATION_SIZE = 1024 * 1024  # 1MB max for the configuration document


def validate_name_format(value: str) -> str:
    """Validate that a name follows the ParallelCluster naming rule."""
    if not value:
        raise ValueError("name cannot be empty")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            "name must start with a letter, contain only alphanumeric "
            "characters or '-', and be at most 60 characters"
        )
    return value


def validate_configuration_size(value: Optional[str]) -> Optional[str]:
    """Validate that the configuration document doesn't exceed size limits."""
    if value is not None and len(value.encode("utf-8")) > MAX_CONFIGURATION_SIZE:
        raise ValueError(
            f"clusterConfiguration exceeds maximum size of "
            f"{MAX_CONFIGURATION_SIZE // 1024}KB"
        )
    return value


# Cluster models


class ClusterCreate(BaseModel):
    """Request model for declaring a cluster."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Cluster name", examples=["hpc-dev"])
    region: str = Field(..., description="AWS region", examples=["eu-west-1"])
    cluster_configuration: str = Field(
        ...,
        alias="clusterConfiguration",
        description="ParallelCluster configuration document (YAML)",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v)

    @field_validator("cluster_configuration")
    @classmethod
    def validate_size(cls, v: str) -> str:
        return validate_configuration_size(v)


class ClusterUpdate(BaseModel):
    """Request model for changing a cluster's desired state."""

    model_config = ConfigDict(populate_by_name=True)

    region: Optional[str] = Field(None, description="Must match the current region")
    cluster_configuration: Optional[str] = Field(
        None,
        alias="clusterConfiguration",
        description="Updated configuration document",
    )

    @field_validator("cluster_configuration")
    @classmethod
    def validate_size(cls, v: Optional[str]) -> Optional[str]:
        return validate_configuration_size(v)


class ClusterResponse(BaseModel):
    """Response model for a cluster."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    region: str
    cluster_configuration: str
    status: str
    status_message: Optional[str] = None
    generation: int
    observed_generation: int
    cluster_name: Optional[str] = None
    cloudformation_stack_arn: Optional[str] = None
    cluster_status: Optional[str] = None
    scheduler_type: Optional[str] = None
    last_updated_time: Optional[str] = None
    up_to_date: bool = False
    finalizers: List[str] = []
    created_at: datetime
    updated_at: datetime
    last_reconcile_time: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class ConditionResponse(BaseModel):
    """Response model for a status condition."""

    type: str
    status: str
    reason: str
    message: str = ""
    observed_generation: Optional[int] = None
    last_transition_time: datetime


class ReconciliationHistoryResponse(BaseModel):
    """Response model for reconciliation history."""

    id: int
    cluster_id: int
    generation: Optional[int] = None
    success: bool
    operation: str
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    trigger_reason: Optional[str] = None
    reconcile_time: datetime


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for cluster management.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server = None
        self._on_cluster_event: Optional[ClusterCallback] = None
        self._db_manager = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Create the FastAPI app and register its routes."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self.log_level = str(config.get("log_level", "info")).lower()

        self.app = FastAPI(
            title="pcluster Operator API",
            description="Declarative management of AWS ParallelCluster clusters",
            version="1.0.0",
        )

        if config.get("cors_enabled"):
            from fastapi.middleware.cors import CORSMiddleware

            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=config.get("cors_origins", ["*"]),
                allow_methods=["*"],
                allow_headers=["*"],
            )

        self._setup_routes()
        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def _require_db(self):
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    async def _get_cluster_or_404(self, name: str) -> Dict[str, Any]:
        cluster = await self._require_db().get_cluster_by_name(name)
        if not cluster:
            raise HTTPException(status_code=404, detail=f"Cluster {name} not found")
        return cluster

    async def _notify(self, event_type: str, cluster: Dict[str, Any]) -> None:
        if self._on_cluster_event:
            params = ClusterParameters(
                name=cluster["name"],
                region=cluster["region"],
                cluster_configuration=cluster["cluster_configuration"],
            )
            await self._on_cluster_event(event_type, params)

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoints:
        - Health check: GET /
        - Clusters CRUD: /api/v1/clusters, /api/v1/clusters/{name}
        - Reconciliation: POST /api/v1/clusters/{name}/reconcile
        - History: GET /api/v1/clusters/{name}/history
        - Conditions: GET /api/v1/clusters/{name}/conditions

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "pcluster-operator"}

        @self.app.post(
            "/api/v1/clusters", response_model=ClusterResponse, status_code=201
        )
        async def create_cluster(cluster: ClusterCreate):
            """Declare a new cluster."""
            db = self._require_db()

            is_valid, error = validate_cluster_parameters(
                {
                    "name": cluster.name,
                    "region": cluster.region,
                    "clusterConfiguration": cluster.cluster_configuration,
                }
            )
            if not is_valid:
                raise HTTPException(
                    status_code=400, detail=f"Validation failed: {error}"
                )

            try:
                if await db.get_cluster_by_name(cluster.name):
                    raise HTTPException(
                        status_code=409,
                        detail=f"Cluster {cluster.name} already exists",
                    )

                cluster_id = await db.create_cluster(
                    name=cluster.name,
                    region=cluster.region,
                    cluster_configuration=cluster.cluster_configuration,
                )
                created = await db.get_cluster(cluster_id)
                await self._notify("created", created)
                return ClusterResponse(**created)

            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error creating cluster: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/clusters", response_model=List[ClusterResponse])
        async def list_clusters(
            status: Optional[str] = None,
            region: Optional[str] = None,
            limit: int = 100,
        ):
            """List clusters with optional filters."""
            db = self._require_db()

            try:
                clusters = await db.list_clusters(
                    status=status, region=region, limit=limit
                )
                return [ClusterResponse(**c) for c in clusters]
            except Exception as e:
                logger.error(f"Error listing clusters: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/clusters/{name}", response_model=ClusterResponse)
        async def get_cluster(name: str):
            """Get a cluster by name."""
            try:
                return ClusterResponse(**await self._get_cluster_or_404(name))
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting cluster: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put("/api/v1/clusters/{name}", response_model=ClusterResponse)
        async def update_cluster(name: str, update: ClusterUpdate):
            """Change a cluster's desired configuration."""
            try:
                current = await self._get_cluster_or_404(name)
                db = self._db_manager

                if current.get("deleted_at") is not None:
                    raise HTTPException(
                        status_code=409,
                        detail=f"Cluster {name} is being deleted",
                    )
                if update.region is not None and update.region != current["region"]:
                    raise HTTPException(
                        status_code=400,
                        detail="region cannot be changed for an existing cluster",
                    )
                if update.cluster_configuration is not None:
                    is_valid, error = validate_configuration_document(
                        update.cluster_configuration
                    )
                    if not is_valid:
                        raise HTTPException(
                            status_code=400, detail=f"Validation failed: {error}"
                        )

                await db.update_cluster(
                    cluster_id=current["id"],
                    cluster_configuration=update.cluster_configuration,
                )
                updated = await db.get_cluster(current["id"])
                await self._notify("updated", updated)
                return ClusterResponse(**updated)

            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error updating cluster: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete("/api/v1/clusters/{name}", status_code=202)
        async def delete_cluster(name: str):
            """Mark a cluster for deletion; the reconciler deletes it remotely."""
            try:
                cluster = await self._get_cluster_or_404(name)
                await self._db_manager.delete_cluster(cluster["id"])
                await self._notify("deleted", cluster)
                return {
                    "message": "Cluster marked for deletion",
                    "name": name,
                }

            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error deleting cluster: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.post("/api/v1/clusters/{name}/reconcile", status_code=202)
        async def trigger_reconciliation(name: str):
            """Manually trigger reconciliation for a cluster."""
            try:
                cluster = await self._get_cluster_or_404(name)
                await self._db_manager.mark_cluster_for_reconciliation(cluster["id"])
                return {"message": "Reconciliation triggered", "name": name}
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error triggering reconciliation: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/clusters/{name}/history",
            response_model=List[ReconciliationHistoryResponse],
        )
        async def get_reconciliation_history(name: str, limit: int = 10):
            """Get reconciliation history for a cluster."""
            try:
                cluster = await self._get_cluster_or_404(name)
                history = await self._db_manager.get_reconciliation_history(
                    cluster["id"], limit
                )
                return [ReconciliationHistoryResponse(**record) for record in history]
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting reconciliation history: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/clusters/{name}/conditions",
            response_model=List[ConditionResponse],
        )
        async def get_conditions(name: str):
            """Get the status conditions of a cluster."""
            try:
                cluster = await self._get_cluster_or_404(name)
                conditions = await self._db_manager.get_conditions(cluster["id"])
                return [ConditionResponse(**c) for c in conditions]
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error getting conditions: {e}")
                raise HTTPException(status_code=500, detail=str(e))

    async def start(self, on_cluster_event: ClusterCallback) -> None:
        """Start the HTTP server."""
        self._on_cluster_event = on_cluster_event

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
