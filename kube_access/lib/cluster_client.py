"""Kubernetes API access with error translation and per-call timeouts."""

import base64
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import (
    AccessError,
    Conflict,
    IncompleteInputs,
    InvalidRequest,
    NotFound,
    PermissionDenied,
    ServiceUnavailable,
    Timeout,
)
from .models import ClusterEndpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_HTTP_CODES = frozenset({429, 500, 502, 503})
TIMEOUT_HTTP_CODES = frozenset({408, 504})
STEP_CLUSTER_DISCOVERY = "cluster discovery"


def translate_api_exception(exc: ApiException, step: str | None = None) -> AccessError:
    """Map a Kubernetes ApiException onto the error taxonomy.

    Args:
        exc: Exception raised by the kubernetes client
        step: Lifecycle step to attach to the translated error

    Returns:
        AccessError subclass; only Timeout, Conflict and ServiceUnavailable are retryable
    """
    status = exc.status or 0
    reason = exc.reason or "unknown"
    message = f"cluster API returned {status} {reason}"

    if status in (401, 403):
        return PermissionDenied(message, step=step, cause=exc)
    if status == 404:
        return NotFound(message, step=step, cause=exc)
    if status == 409:
        return Conflict(message, step=step, cause=exc)
    if status in TIMEOUT_HTTP_CODES:
        return Timeout(message, step=step, cause=exc)
    if status in TRANSIENT_HTTP_CODES:
        return ServiceUnavailable(message, step=step, cause=exc)
    if status in (400, 422):
        return InvalidRequest(message, step=step, cause=exc)
    return AccessError(message, step=step, cause=exc)


def call_api(fn: Callable[..., T], *args: Any, step: str, timeout: float, **kwargs: Any) -> T:
    """Invoke a kubernetes client method with a timeout and translated errors.

    Raises:
        AccessError: Translated ApiException or Timeout for transport timeouts
    """
    try:
        return fn(*args, _request_timeout=timeout, **kwargs)
    except ApiException as e:
        raise translate_api_exception(e, step) from e
    except (urllib3.exceptions.TimeoutError, urllib3.exceptions.MaxRetryError) as e:
        raise Timeout(f"cluster API call timed out after {timeout}s", step=step, cause=e) from e


class KubernetesClient:
    """Loads cluster credentials and exposes the API groups kube-access uses."""

    def __init__(self, kubeconfig: Path | None = None, context: str | None = None) -> None:
        """Initialize Kubernetes client.

        Args:
            kubeconfig: Explicit kubeconfig path; when None, in-cluster config is
                tried first, then the default kubeconfig location
            context: Kubeconfig context to use
        """
        self._load_config(kubeconfig, context)
        self.rbac = client.RbacAuthorizationV1Api()
        self.core = client.CoreV1Api()

    @staticmethod
    def _load_config(kubeconfig: Path | None, context: str | None) -> None:
        if kubeconfig:
            config.load_kube_config(config_file=str(kubeconfig), context=context)
            return

        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config(context=context)

    def get_cluster_endpoint(self, name: str, timeout: float, namespace: str | None = None) -> ClusterEndpoint:
        """Discover API server URL and CA from the kube-public/cluster-info ConfigMap.

        Args:
            name: Cluster name to use inside generated bundles
            timeout: Request timeout in seconds
            namespace: Default namespace for generated contexts

        Returns:
            ClusterEndpoint with PEM CA data

        Raises:
            IncompleteInputs: If the ConfigMap lacks a server or CA data
        """
        config_map = call_api(
            self.core.read_namespaced_config_map,
            "cluster-info",
            "kube-public",
            step=STEP_CLUSTER_DISCOVERY,
            timeout=timeout,
        )
        try:
            cluster_kubeconfig = yaml.safe_load(config_map.data["kubeconfig"])
            cluster = cluster_kubeconfig["clusters"][0]["cluster"]
            server = cluster["server"]
            ca_data = base64.b64decode(cluster["certificate-authority-data"], validate=True)
        except (TypeError, KeyError, IndexError, ValueError, yaml.YAMLError) as e:
            raise IncompleteInputs(
                f"kube-public/cluster-info has no usable server and CA data: {e!r}",
                step=STEP_CLUSTER_DISCOVERY,
                cause=e,
            ) from e

        logger.info("Discovered API server %s for cluster %s", server, name)
        return ClusterEndpoint(name=name, server=server, ca_data=ca_data, namespace=namespace)
