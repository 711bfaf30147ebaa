"""Kubernetes client construction and call helpers.

The official kubernetes client is synchronous. Calls are pushed to the
default executor so a blocking API round trip never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config

from .config import Config

logger = logging.getLogger(__name__)

_api_client: client.ApiClient | None = None


@dataclass
class KubeClients:
    """Bundle of the typed API clients the operator uses."""

    core: Any
    apps: Any
    custom: Any


def load_kube_config(cfg: Config) -> None:
    """Load cluster credentials.

    An explicit KUBECONFIG wins; otherwise in-cluster service account
    credentials are tried first with the default kubeconfig as fallback.
    """
    if cfg.kubeconfig is not None:
        config.load_kube_config(config_file=str(cfg.kubeconfig))
        logger.info("Loaded kubeconfig", extra={"kubeconfig": str(cfg.kubeconfig)})
        return

    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster configuration")
    except config.ConfigException:
        logger.warning("In-cluster configuration unavailable, trying local kubeconfig")
        config.load_kube_config()


def build_clients(cfg: Config) -> KubeClients:
    """Load credentials and construct the API clients."""
    load_kube_config(cfg)
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        custom=client.CustomObjectsApi(),
    )


async def call_api(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking client call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


def to_dict(obj: Any) -> dict[str, Any]:
    """Convert a client model object to a plain camelCase dictionary."""
    global _api_client
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if _api_client is None:
        _api_client = client.ApiClient()
    return _api_client.sanitize_for_serialization(obj)
