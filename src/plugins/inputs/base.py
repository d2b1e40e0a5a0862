"""
Input Plugin Base - Abstract interface for cluster input sources.

Input plugins let users submit Cluster resources. The controller polls the
database, so input plugins only need to persist what they receive; the
callback lets them notify the application of changes as they happen.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

from plugins.base import ClusterParameters

# (event_type: 'created' | 'updated' | 'deleted', params) -> None
ClusterCallback = Callable[[str, ClusterParameters], Awaitable[None]]


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins receive cluster definitions from an external source and
    store them through the database manager.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, on_cluster_event: ClusterCallback) -> None:
        """
        Start listening for cluster submissions.

        Args:
            on_cluster_event: Invoked after a cluster is created, updated or
                marked for deletion.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    def set_db_manager(self, db_manager: Any) -> None:
        """
        Set the database manager for plugins that need database access.

        Args:
            db_manager: The DatabaseManager instance
        """
        pass
