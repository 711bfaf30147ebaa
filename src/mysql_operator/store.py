"""Desired-state store implementations.

A store returns the current desired-state record for an identity, or None
when the record does not exist. Absence is a normal answer, not an error:
every other failure is raised as StoreError.

Records that exist but cannot be decoded are reported as
SpecValidationError so the caller can tell a broken cluster spec apart
from a broken store.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from .config import Config
from .kube import call_api
from .models import ClusterStatus, MySQLCluster, ReconcileIdentity
from .spec_loader import ManifestLoadError, load_manifest

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the store fails for any reason other than absence."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ClusterStore(ABC):
    """Abstract desired-state store."""

    @abstractmethod
    async def get(self, identity: ReconcileIdentity) -> MySQLCluster | None:
        """Fetch the record for identity.

        Returns:
            The decoded record, or None if it does not exist.

        Raises:
            StoreError: If the store cannot answer.
            SpecValidationError: If the record exists but does not decode.
        """

    @abstractmethod
    async def update_status(self, identity: ReconcileIdentity, status: ClusterStatus) -> None:
        """Merge the status payload into the stored record.

        Raises:
            StoreError: If the update fails, including when the record is gone.
        """


class KubernetesClusterStore(ClusterStore):
    """Store backed by the PerconaServerForMySQL custom resource."""

    def __init__(self, custom_api: Any, cfg: Config) -> None:
        """Initialize the store.

        Args:
            custom_api: A kubernetes.client.CustomObjectsApi (or compatible).
            cfg: Operator configuration with custom resource coordinates.
        """
        self._api = custom_api
        self._group = cfg.cr_group
        self._version = cfg.cr_version
        self._plural = cfg.cr_plural

    async def get(self, identity: ReconcileIdentity) -> MySQLCluster | None:
        try:
            obj = await call_api(
                self._api.get_namespaced_custom_object,
                group=self._group,
                version=self._version,
                namespace=identity.namespace,
                plural=self._plural,
                name=identity.name,
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug("Cluster not found", extra={"identity": identity.key})
                return None
            raise StoreError(
                f"get cluster with name {identity.name} in namespace {identity.namespace}: "
                f"{e.status} {e.reason}",
                status=e.status,
            ) from e
        except (Urllib3HTTPError, ConnectionError, TimeoutError) as e:
            raise StoreError(
                f"get cluster with name {identity.name} in namespace {identity.namespace}: {e}"
            ) from e

        return MySQLCluster.from_manifest(obj)

    async def update_status(self, identity: ReconcileIdentity, status: ClusterStatus) -> None:
        try:
            await call_api(
                self._api.patch_namespaced_custom_object_status,
                group=self._group,
                version=self._version,
                namespace=identity.namespace,
                plural=self._plural,
                name=identity.name,
                body={"status": status.to_patch()},
            )
        except ApiException as e:
            raise StoreError(
                f"update status of {identity.key}: {e.status} {e.reason}", status=e.status
            ) from e
        except (Urllib3HTTPError, ConnectionError, TimeoutError) as e:
            raise StoreError(f"update status of {identity.key}: {e}") from e


class FileClusterStore(ClusterStore):
    """Store reading manifests from ``<root>/<namespace>/<name>.yaml``.

    Used for offline runs. Status updates are kept in memory and layered
    over the file contents on the next get().
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._statuses: dict[ReconcileIdentity, dict[str, Any]] = {}

    def path_for(self, identity: ReconcileIdentity) -> Path:
        return self._root / identity.namespace / f"{identity.name}.yaml"

    async def get(self, identity: ReconcileIdentity) -> MySQLCluster | None:
        path = self.path_for(identity)
        try:
            manifest = load_manifest(path)
        except FileNotFoundError:
            return None
        except ManifestLoadError as e:
            raise StoreError(str(e)) from e

        manifest = copy.deepcopy(manifest)
        metadata = manifest.setdefault("metadata", {})
        if not isinstance(metadata, dict):
            raise StoreError(f"metadata must be a mapping: {path}")
        metadata.setdefault("name", identity.name)
        metadata.setdefault("namespace", identity.namespace)
        if identity in self._statuses:
            manifest["status"] = copy.deepcopy(self._statuses[identity])

        return MySQLCluster.from_manifest(manifest)

    async def update_status(self, identity: ReconcileIdentity, status: ClusterStatus) -> None:
        if not self.path_for(identity).exists():
            raise StoreError(f"update status of {identity.key}: record not found", status=404)
        self._statuses[identity] = status.to_patch()

    def status_of(self, identity: ReconcileIdentity) -> dict[str, Any] | None:
        """Return the last status written for identity, if any."""
        return copy.deepcopy(self._statuses.get(identity))
