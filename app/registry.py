"""
Bigtable Client Registry

Holds one admin handle and one data handle per configured Bigtable instance.
Built once at application startup and shared read-only by every request.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Tuple

from google.cloud import bigtable

from config import Settings

logger = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """A handle could not be constructed; the service must not start."""


class InstanceNotFoundError(KeyError):
    """Requested instance id is not part of the configured registry."""

    def __init__(self, instance_id: str):
        super().__init__(instance_id)
        self.instance_id = instance_id

    def __str__(self) -> str:
        return f"Instance '{self.instance_id}' is not configured"


@dataclass(frozen=True)
class InstanceHandles:
    instance_id: str
    admin: Any  # google.cloud.bigtable.instance.Instance from an admin client
    data: Any  # google.cloud.bigtable.instance.Instance from a data client


class ClientRegistry:
    """Immutable instance-id -> handles lookup."""

    def __init__(self, handles: Mapping[str, InstanceHandles], clients: Tuple[Any, ...] = ()):
        self._handles = MappingProxyType(dict(handles))
        self._clients = clients

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client_factory: Callable[..., Any] = bigtable.Client,
    ) -> "ClientRegistry":
        """
        Construct admin and data handles for every configured instance.

        Args:
            settings: loaded Settings (project id + instance ids)
            client_factory: callable building a Bigtable client, bigtable.Client by default

        Raises:
            RegistryError: any client or instance handle failed to build,
                or an instance is missing while verification is enabled
        """
        project_id = settings.project_id

        try:
            admin_client = client_factory(project=project_id, admin=True)
            data_client = client_factory(project=project_id)
        except Exception as e:
            logger.critical(f"Failed to create Bigtable clients for project={project_id}: {e}")
            raise RegistryError(
                f"Could not create Bigtable clients for project '{project_id}'"
            ) from e

        handles: Dict[str, InstanceHandles] = {}
        for instance_id in settings.instance_ids:
            logger.info(
                f"Connecting to Bigtable | project={project_id} | instance={instance_id}"
            )
            try:
                admin = admin_client.instance(instance_id)
                data = data_client.instance(instance_id)
                if settings.verify_instances and not admin.exists():
                    raise RegistryError(f"Instance '{instance_id}' does not exist")
            except RegistryError:
                logger.critical(f"Bigtable instance missing: {instance_id}")
                raise
            except Exception as e:
                logger.critical(f"Failed to build handles for instance={instance_id}: {e}")
                raise RegistryError(
                    f"Could not create Bigtable handles for instance '{instance_id}'"
                ) from e

            handles[instance_id] = InstanceHandles(instance_id, admin, data)
            logger.info(f"Bigtable handles ready for instance={instance_id}")

        return cls(handles, clients=(admin_client, data_client))

    @property
    def instance_ids(self) -> Tuple[str, ...]:
        return tuple(self._handles.keys())

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._handles

    def get(self, instance_id: str) -> InstanceHandles:
        try:
            return self._handles[instance_id]
        except KeyError:
            raise InstanceNotFoundError(instance_id) from None

    def admin(self, instance_id: str) -> Any:
        return self.get(instance_id).admin

    def data(self, instance_id: str) -> Any:
        return self.get(instance_id).data

    def close(self) -> None:
        """Close gRPC channels held by the underlying clients."""
        for client in self._clients:
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as e:
                logger.warning(f"Error while closing Bigtable client: {e}")
