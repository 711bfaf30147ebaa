"""Kubernetes API Mock for Integration Testing.

This module provides in-memory fakes of the kubernetes client APIs the
operator calls, so reconcile flows can be tested without a cluster.

Key Features:
- In-memory object state keyed by kind, namespace and name
- Create/read/patch semantics with 404 and 409 responses
- StatefulSet readiness simulation
- Error injection per verb and kind
- Custom object store for PerconaServerForMySQL records

Usage:
    from k8s_mock import MockKubernetesContext

    with MockKubernetesContext() as ctx:
        ctx.state.add_cluster(manifest)
        reconciler = build_reconciler(config)
        await reconciler.reconcile(identity, reconcile_ctx)

        assert ctx.state.count("StatefulSet") == 1
"""

from .apis import MockAppsV1Api, MockCoreV1Api, MockCustomObjectsApi
from .context import MockKubernetesContext
from .state import MockClusterState

__all__ = [
    "MockAppsV1Api",
    "MockClusterState",
    "MockCoreV1Api",
    "MockCustomObjectsApi",
    "MockKubernetesContext",
]
