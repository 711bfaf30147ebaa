"""MySQL topology convergence.

Renders the objects that make up the cluster's instance topology and
creates or patches each one so it matches the defaulted cluster spec:

- MySQL: headless Service, StatefulSet and, when a configuration fragment
  is given, a ConfigMap holding it
- Orchestrator (asynchronous replication): headless Service and StatefulSet
- MySQL Router (group replication): Service and Deployment

Every rendered object is stamped with a hash of its own content. An object
is patched when its observed hash differs or when one of its managed
fields (replicas, pod template, Service ports and selector, ConfigMap data)
was changed behind the operator's back. Objects of a component the
cluster no longer asks for (orchestrator after a switch to group
replication, say) are deleted. After the objects converge the step reports
readiness in the cluster status, only writing when the status changed. A
permanent failure is recorded as the error state with its message.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any

from kubernetes.client.rest import ApiException

from .kube import call_api, to_dict
from .models import ClusterState, ClusterStatus, ComponentStatus
from .secrets_step import MANAGED_BY, MANAGED_BY_LABEL
from .steps import (
    TRANSIENT_HTTP_STATUSES,
    ConvergenceStep,
    PermanentStepError,
    TransientStepError,
    step_error_from,
)
from .store import ClusterStore, StoreError

if TYPE_CHECKING:
    from .context import ReconcileContext
    from .models import MySQLCluster

CONFIG_HASH_ANNOTATION = "ps.percona.com/config-hash"

MYSQL_PORT = 3306
MYSQL_ADMIN_PORT = 33062
MYSQLX_PORT = 33060
ORCHESTRATOR_PORT = 3000
ROUTER_RW_PORT = 6446
ROUTER_RO_PORT = 6447

DATA_VOLUME_NAME = "datadir"
DATA_MOUNT_PATH = "/var/lib/mysql"
CONFIG_VOLUME_NAME = "config"
CONFIG_MOUNT_PATH = "/etc/mysql/config"

# kind -> (api attribute, resource suffix used in client method names)
_KIND_METHODS: dict[str, tuple[str, str]] = {
    "ConfigMap": ("core", "config_map"),
    "Service": ("core", "service"),
    "StatefulSet": ("apps", "stateful_set"),
    "Deployment": ("apps", "deployment"),
}

# Fields compared against the live object on every pass, so edits made
# outside the operator are reverted even when the hash annotation was kept
_MANAGED_FIELDS: dict[str, tuple[tuple[str, ...], ...]] = {
    "ConfigMap": (("data",),),
    "Service": (("spec", "ports"), ("spec", "selector")),
    "StatefulSet": (("spec", "replicas"), ("spec", "template")),
    "Deployment": (("spec", "replicas"), ("spec", "template")),
}

# Optional component -> kinds it owns, workloads before their Services
_COMPONENT_KINDS: dict[str, tuple[str, ...]] = {
    "orc": ("StatefulSet", "Service"),
    "router": ("Deployment", "Service"),
}


def mysql_name(cluster: MySQLCluster) -> str:
    return f"{cluster.metadata.name}-mysql"


def orchestrator_name(cluster: MySQLCluster) -> str:
    return f"{cluster.metadata.name}-orc"


def router_name(cluster: MySQLCluster) -> str:
    return f"{cluster.metadata.name}-router"


def component_labels(cluster: MySQLCluster, component: str) -> dict[str, str]:
    return {
        "app.kubernetes.io/name": "percona-server",
        "app.kubernetes.io/instance": cluster.metadata.name,
        "app.kubernetes.io/component": component,
        MANAGED_BY_LABEL: MANAGED_BY,
    }


def content_hash(manifest: dict[str, Any]) -> str:
    """Stable hash of a manifest, ignoring the hash annotation itself."""
    body = json.loads(json.dumps(manifest, sort_keys=True))
    annotations = body.get("metadata", {}).get("annotations", {})
    annotations.pop(CONFIG_HASH_ANNOTATION, None)
    encoded = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def _metadata(cluster: MySQLCluster, name: str, component: str) -> dict[str, Any]:
    return {
        "name": name,
        "namespace": cluster.metadata.namespace,
        "labels": component_labels(cluster, component),
        "ownerReferences": [cluster.owner_reference()],
    }


def _secret_env(name: str, secret_name: str, user: str) -> dict[str, Any]:
    return {"name": name, "valueFrom": {"secretKeyRef": {"name": secret_name, "key": user}}}


def _probe(command: list[str], probe: Any) -> dict[str, Any]:
    return {
        "exec": {"command": command},
        "initialDelaySeconds": probe.initial_delay_seconds,
        "periodSeconds": probe.period_seconds,
        "timeoutSeconds": probe.timeout_seconds,
        "failureThreshold": probe.failure_threshold,
    }


def _headless_service(
    cluster: MySQLCluster, name: str, component: str, ports: list[tuple[str, int]]
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cluster, name, component),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": component_labels(cluster, component),
            "ports": [{"name": port_name, "port": port} for port_name, port in ports],
        },
    }


def render_mysql(cluster: MySQLCluster) -> list[dict[str, Any]]:
    """Render the MySQL objects."""
    mysql = cluster.spec.mysql
    assert mysql is not None
    name = mysql_name(cluster)
    labels = component_labels(cluster, "mysql")
    secret_name = cluster.spec.secrets_name or ""

    objects: list[dict[str, Any]] = []

    volume_mounts = [{"name": DATA_VOLUME_NAME, "mountPath": DATA_MOUNT_PATH}]
    volumes: list[dict[str, Any]] = []
    if mysql.configuration:
        objects.append(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": _metadata(cluster, name, "mysql"),
                "data": {"my.cnf": mysql.configuration},
            }
        )
        volume_mounts.append({"name": CONFIG_VOLUME_NAME, "mountPath": CONFIG_MOUNT_PATH})
        volumes.append({"name": CONFIG_VOLUME_NAME, "configMap": {"name": name}})

    objects.append(
        _headless_service(
            cluster,
            name,
            "mysql",
            [("mysql", MYSQL_PORT), ("mysql-admin", MYSQL_ADMIN_PORT), ("mysqlx", MYSQLX_PORT)],
        )
    )

    claim_spec: dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": mysql.volume_spec.size}},
    }
    if mysql.volume_spec.storage_class_name:
        claim_spec["storageClassName"] = mysql.volume_spec.storage_class_name

    container: dict[str, Any] = {
        "name": "mysql",
        "image": mysql.image,
        "imagePullPolicy": mysql.image_pull_policy,
        "env": [
            _secret_env("MYSQL_ROOT_PASSWORD", secret_name, "root"),
            _secret_env("OPERATOR_ADMIN_PASSWORD", secret_name, "operator"),
            _secret_env("REPLICATION_PASSWORD", secret_name, "replication"),
            {"name": "CLUSTER_TYPE", "value": mysql.cluster_type},
            {"name": "SEMI_SYNC_SIZE", "value": str(mysql.size_semi_sync)},
            {"name": "SEMI_SYNC_TYPE", "value": mysql.semi_sync_type},
        ],
        "ports": [
            {"name": "mysql", "containerPort": MYSQL_PORT},
            {"name": "mysql-admin", "containerPort": MYSQL_ADMIN_PORT},
            {"name": "mysqlx", "containerPort": MYSQLX_PORT},
        ],
        "resources": {
            "requests": dict(mysql.resources.requests),
            "limits": dict(mysql.resources.limits),
        },
        "readinessProbe": _probe(["/opt/percona/healthcheck", "readiness"], mysql.readiness_probe),
        "livenessProbe": _probe(["/opt/percona/healthcheck", "liveness"], mysql.liveness_probe),
        "volumeMounts": volume_mounts,
    }

    pod_spec: dict[str, Any] = {"containers": [container]}
    if volumes:
        pod_spec["volumes"] = volumes

    objects.append(
        {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": _metadata(cluster, name, "mysql"),
            "spec": {
                "serviceName": name,
                "replicas": mysql.size,
                "podManagementPolicy": "OrderedReady",
                "selector": {"matchLabels": labels},
                "template": {"metadata": {"labels": labels}, "spec": pod_spec},
                "volumeClaimTemplates": [
                    {"metadata": {"name": DATA_VOLUME_NAME}, "spec": claim_spec}
                ],
            },
        }
    )
    return objects


def render_orchestrator(cluster: MySQLCluster) -> list[dict[str, Any]]:
    """Render the orchestrator objects."""
    orchestrator = cluster.spec.orchestrator
    name = orchestrator_name(cluster)
    labels = component_labels(cluster, "orc")
    secret_name = cluster.spec.secrets_name or ""

    return [
        _headless_service(cluster, name, "orc", [("web", ORCHESTRATOR_PORT)]),
        {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": _metadata(cluster, name, "orc"),
            "spec": {
                "serviceName": name,
                "replicas": orchestrator.size,
                "selector": {"matchLabels": labels},
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "containers": [
                            {
                                "name": "orc",
                                "image": orchestrator.image,
                                "env": [
                                    _secret_env(
                                        "ORC_TOPOLOGY_PASSWORD", secret_name, "orchestrator"
                                    ),
                                    {"name": "MYSQL_SERVICE", "value": mysql_name(cluster)},
                                ],
                                "ports": [{"name": "web", "containerPort": ORCHESTRATOR_PORT}],
                            }
                        ]
                    },
                },
            },
        },
    ]


def render_router(cluster: MySQLCluster) -> list[dict[str, Any]]:
    """Render the MySQL Router objects."""
    router = cluster.spec.router
    name = router_name(cluster)
    labels = component_labels(cluster, "router")
    secret_name = cluster.spec.secrets_name or ""

    return [
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": _metadata(cluster, name, "router"),
            "spec": {
                "selector": labels,
                "ports": [
                    {"name": "read-write", "port": ROUTER_RW_PORT},
                    {"name": "read-only", "port": ROUTER_RO_PORT},
                ],
            },
        },
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": _metadata(cluster, name, "router"),
            "spec": {
                "replicas": router.size,
                "selector": {"matchLabels": labels},
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "containers": [
                            {
                                "name": "router",
                                "image": router.image,
                                "env": [
                                    _secret_env("OPERATOR_PASSWORD", secret_name, "operator"),
                                    {"name": "MYSQL_SERVICE", "value": mysql_name(cluster)},
                                ],
                                "ports": [
                                    {"name": "read-write", "containerPort": ROUTER_RW_PORT},
                                    {"name": "read-only", "containerPort": ROUTER_RO_PORT},
                                ],
                            }
                        ]
                    },
                },
            },
        },
    ]


def render_topology(cluster: MySQLCluster) -> list[dict[str, Any]]:
    """Render every topology object for a defaulted cluster, hash-stamped.

    Order matters: ConfigMaps and Services come before the workloads that
    reference them.
    """
    objects = render_mysql(cluster)
    if cluster.spec.orchestrator.enabled:
        objects.extend(render_orchestrator(cluster))
    if cluster.spec.router.enabled:
        objects.extend(render_router(cluster))

    for obj in objects:
        obj["metadata"].setdefault("annotations", {})[CONFIG_HASH_ANNOTATION] = content_hash(obj)
    return objects


def disabled_components(cluster: MySQLCluster) -> list[str]:
    """Optional components the defaulted cluster spec does not ask for."""
    enabled = {"orc": cluster.spec.orchestrator.enabled, "router": cluster.spec.router.enabled}
    return [component for component, on in enabled.items() if not on]


def _lookup(obj: Any, path: tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _covers(live: Any, desired: Any) -> bool:
    """True if every value set in desired is present and equal in live.

    Keys only present in live are ignored, they are filled in by the API
    server (protocol, terminationMessagePath and the like). Lists must
    match in length and element by element. A missing live value equals an
    empty desired one, since the server omits empty maps and lists.
    """
    if isinstance(desired, dict):
        live = {} if live is None else live
        return isinstance(live, dict) and all(
            _covers(live.get(key), value) for key, value in desired.items()
        )
    if isinstance(desired, list):
        live = [] if live is None else live
        return (
            isinstance(live, list)
            and len(live) == len(desired)
            and all(_covers(have, want) for have, want in zip(live, desired))
        )
    return live == desired


def drifted_fields(live: dict[str, Any], desired: dict[str, Any]) -> list[str]:
    """Managed fields of a live object that no longer match the rendered one."""
    return [
        ".".join(path)
        for path in _MANAGED_FIELDS[desired["kind"]]
        if not _covers(_lookup(live, path), _lookup(desired, path))
    ]


class MySQLTopologyStep(ConvergenceStep):
    """Converges the cluster's instance topology."""

    name = "topology"

    def __init__(self, core_api: Any, apps_api: Any, store: ClusterStore) -> None:
        """Initialize the step.

        Args:
            core_api: A kubernetes.client.CoreV1Api (or compatible).
            apps_api: A kubernetes.client.AppsV1Api (or compatible).
            store: Store used to write the status payload.
        """
        self._apis = {"core": core_api, "apps": apps_api}
        self._store = store

    async def apply(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
        mysql = cluster.spec.mysql
        if mysql is None or mysql.size is None or mysql.image is None:
            raise PermanentStepError("topology called on a record that was not defaulted")

        await self._require_users_secret(cluster)

        try:
            changed = await self._converge_objects(cluster, ctx)
        except PermanentStepError as e:
            await self._report_error(cluster, ctx, str(e))
            raise

        self.check_cancelled(ctx)
        await self._report_status(cluster, ctx)

        ctx.log.info(
            "Topology converged",
            extra={"objects_changed": changed, "mysql_size": cluster.spec.mysql.size},
        )

    async def _converge_objects(self, cluster: MySQLCluster, ctx: ReconcileContext) -> int:
        changed = 0
        for obj in render_topology(cluster):
            self.check_cancelled(ctx)
            if await self._ensure(obj, ctx):
                changed += 1

        for component in disabled_components(cluster):
            changed += await self._prune(cluster, component, ctx)
        return changed

    async def _require_users_secret(self, cluster: MySQLCluster) -> None:
        secret_name = cluster.spec.secrets_name
        try:
            await call_api(
                self._apis["core"].read_namespaced_secret,
                secret_name,
                cluster.metadata.namespace,
            )
        except ApiException as e:
            if e.status == 404:
                raise TransientStepError(f"users secret {secret_name} does not exist yet") from e
            raise step_error_from(e, f"read secret {secret_name}") from e
        except Exception as e:
            raise step_error_from(e, f"read secret {secret_name}") from e

    async def _ensure(self, obj: dict[str, Any], ctx: ReconcileContext) -> bool:
        """Create or patch one object. Returns True if a write happened."""
        kind = obj["kind"]
        api_attr, resource = _KIND_METHODS[kind]
        api = self._apis[api_attr]
        name = obj["metadata"]["name"]
        namespace = obj["metadata"]["namespace"]
        desired_hash = obj["metadata"]["annotations"][CONFIG_HASH_ANNOTATION]

        try:
            existing = await call_api(getattr(api, f"read_namespaced_{resource}"), name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise step_error_from(e, f"read {kind} {name}") from e
            existing = None
        except Exception as e:
            raise step_error_from(e, f"read {kind} {name}") from e

        if existing is None:
            try:
                await call_api(getattr(api, f"create_namespaced_{resource}"), namespace, obj)
            except Exception as e:
                raise step_error_from(e, f"create {kind} {name}") from e
            ctx.log.info("Created object", extra={"kind": kind, "object": name})
            return True

        live = to_dict(existing)
        annotations = live.get("metadata", {}).get("annotations") or {}
        drifted = drifted_fields(live, obj)
        if annotations.get(CONFIG_HASH_ANNOTATION) == desired_hash and not drifted:
            return False

        try:
            await call_api(getattr(api, f"patch_namespaced_{resource}"), name, namespace, obj)
        except Exception as e:
            raise step_error_from(e, f"patch {kind} {name}") from e
        ctx.log.info("Patched object", extra={"kind": kind, "object": name, "drifted": drifted})
        return True

    async def _prune(self, cluster: MySQLCluster, component: str, ctx: ReconcileContext) -> int:
        """Delete the objects of a disabled component. Returns the number deleted."""
        namespace = cluster.metadata.namespace
        selector = ",".join(f"{k}={v}" for k, v in component_labels(cluster, component).items())

        deleted = 0
        for kind in _COMPONENT_KINDS[component]:
            api_attr, resource = _KIND_METHODS[kind]
            api = self._apis[api_attr]
            try:
                listed = await call_api(
                    getattr(api, f"list_namespaced_{resource}"), namespace, label_selector=selector
                )
            except Exception as e:
                raise step_error_from(e, f"list {kind} for {component}") from e

            for item in to_dict(listed).get("items") or []:
                name = item["metadata"]["name"]
                self.check_cancelled(ctx)
                try:
                    await call_api(getattr(api, f"delete_namespaced_{resource}"), name, namespace)
                except ApiException as e:
                    # Already gone
                    if e.status == 404:
                        continue
                    raise step_error_from(e, f"delete {kind} {name}") from e
                except Exception as e:
                    raise step_error_from(e, f"delete {kind} {name}") from e
                ctx.log.info("Deleted object", extra={"kind": kind, "object": name})
                deleted += 1
        return deleted

    async def _report_error(
        self, cluster: MySQLCluster, ctx: ReconcileContext, message: str
    ) -> None:
        """Record a permanent failure in the cluster status."""
        status = cluster.status.model_copy(deep=True)
        status.state = ClusterState.ERROR
        status.message = message
        status.observed_generation = cluster.metadata.generation
        if status.to_patch() == cluster.status.to_patch():
            return

        try:
            await self._store.update_status(cluster.identity, status)
        except StoreError as e:
            # The step failure is raised regardless
            ctx.log.warning("Could not record error status", extra={"error": str(e)})
            return
        ctx.log.info("Status updated", extra={"state": status.state.value, "error": message})

    async def _report_status(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
        mysql = cluster.spec.mysql
        assert mysql is not None and mysql.size is not None
        name = mysql_name(cluster)

        try:
            sts = await call_api(
                self._apis["apps"].read_namespaced_stateful_set, name, cluster.metadata.namespace
            )
        except Exception as e:
            raise step_error_from(e, f"read StatefulSet {name}") from e

        ready = to_dict(sts).get("status", {}).get("readyReplicas") or 0
        state = ClusterState.READY if ready >= mysql.size else ClusterState.INITIALIZING
        status = ClusterStatus(
            state=state,
            mysql=ComponentStatus(size=mysql.size, ready=ready, state=state),
            observed_generation=cluster.metadata.generation,
        )

        if status.to_patch() == cluster.status.to_patch():
            return

        try:
            await self._store.update_status(cluster.identity, status)
        except StoreError as e:
            if e.status is None or e.status in TRANSIENT_HTTP_STATUSES:
                raise TransientStepError(f"update status: {e}") from e
            raise PermanentStepError(f"update status: {e}") from e

        ctx.log.info(
            "Status updated",
            extra={"state": state.value, "ready": ready, "size": mysql.size},
        )
