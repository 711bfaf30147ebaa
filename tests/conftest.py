"""Pytest configuration and fixtures."""

import copy
import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for k8s_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

ASYNC_CLUSTER_MANIFEST: dict[str, Any] = {
    "apiVersion": "ps.percona.com/v2",
    "kind": "PerconaServerForMySQL",
    "metadata": {"name": "cluster1", "namespace": "db", "uid": "uid-cluster1", "generation": 1},
    "spec": {"mysql": {"clusterType": "async", "size": 3, "version": "8.0.36-28"}},
}

GROUP_REPLICATION_MANIFEST: dict[str, Any] = {
    "apiVersion": "ps.percona.com/v2",
    "kind": "PerconaServerForMySQL",
    "metadata": {"name": "gr1", "namespace": "db", "uid": "uid-gr1", "generation": 4},
    "spec": {"mysql": {"clusterType": "group-replication", "size": 3, "version": "8.4"}},
}


@pytest.fixture
def async_manifest() -> dict[str, Any]:
    """A minimal valid asynchronous replication cluster."""
    return copy.deepcopy(ASYNC_CLUSTER_MANIFEST)


@pytest.fixture
def gr_manifest() -> dict[str, Any]:
    """A minimal valid group replication cluster."""
    return copy.deepcopy(GROUP_REPLICATION_MANIFEST)
