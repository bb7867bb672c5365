"""Test fixtures for kube_access tests."""

import copy
import threading
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from kubernetes.client.rest import ApiException

from kube_access.lib.ca_store import write_ca_to_directory
from kube_access.lib.config import AccessConfig, RetryPolicy
from kube_access.lib.key_generator import KeyMaterialGenerator
from kube_access.lib.kubeconfig import CredentialBundleWriter
from kube_access.lib.ledger import InMemoryLedger
from kube_access.lib.lifecycle import AccessLifecycleOrchestrator
from kube_access.lib.models import (
    CAKeyMaterial,
    ClusterEndpoint,
    Identity,
    PolicyRule,
    RoleDefinition,
)
from kube_access.lib.rbac import RBACReconciler
from kube_access.lib.signer import CertificateAuthoritySigner


def no_sleep(_seconds: float) -> None:
    """Backoff sleep replacement for tests."""


class FakeRbacApi:
    """In-memory stand-in for RbacAuthorizationV1Api.

    Objects are stored as manifests (dicts). Every write bumps a global
    resource version; replace and delete-with-preconditions answer 409 when
    the caller's resource version is stale, and create answers 409 when the
    object exists, matching the API server's optimistic concurrency.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._version = 0
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.failures: dict[str, list[int]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def fail(self, method: str, *statuses: int) -> None:
        """Make the next calls to ``method`` raise ApiException with ``statuses``."""
        self.failures.setdefault(method, []).extend(statuses)

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def bindings(self, kind: str = "RoleBinding") -> list[dict[str, Any]]:
        return [obj for (k, _, _), obj in self.objects.items() if k == kind]

    def _op(self, method: str, kwargs: dict[str, Any], fn, *args: Any) -> Any:
        with self._lock:
            self.calls.append((method, kwargs))
            queued = self.failures.get(method)
            if queued:
                raise ApiException(status=queued.pop(0), reason="Injected")
            return fn(*args)

    def _bump(self) -> str:
        self._version += 1
        return str(self._version)

    def _create(self, kind: str, namespace: str | None, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        key = (kind, namespace or "", name)
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = self._bump()
        if namespace:
            obj["metadata"]["namespace"] = namespace
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def _read(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        key = (kind, namespace or "", name)
        if key not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        return copy.deepcopy(self.objects[key])

    def _replace(self, kind: str, namespace: str | None, name: str, body: dict[str, Any]) -> dict[str, Any]:
        key = (kind, namespace or "", name)
        if key not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        requested = body["metadata"].get("resourceVersion")
        if requested is not None and requested != self.objects[key]["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = self._bump()
        if namespace:
            obj["metadata"]["namespace"] = namespace
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def _delete(self, kind: str, namespace: str | None, name: str, body: Any = None) -> dict[str, Any]:
        key = (kind, namespace or "", name)
        if key not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        preconditions = getattr(body, "preconditions", None)
        expected = getattr(preconditions, "resource_version", None)
        if expected is not None and expected != self.objects[key]["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        del self.objects[key]
        return {"status": "Success"}

    def _list(self, kind: str, limit: int | None = None, token: str | None = None) -> dict[str, Any]:
        items = [copy.deepcopy(obj) for key, obj in sorted(self.objects.items()) if key[0] == kind]
        start = int(token) if token else 0
        end = start + limit if limit else len(items)
        return {
            "items": items[start:end],
            "metadata": {"continue": str(end) if end < len(items) else None},
        }

    def create_cluster_role(self, body, **kwargs):
        return self._op("create_cluster_role", kwargs, self._create, "ClusterRole", None, body)

    def read_cluster_role(self, name, **kwargs):
        return self._op("read_cluster_role", kwargs, self._read, "ClusterRole", None, name)

    def replace_cluster_role(self, name, body, **kwargs):
        return self._op("replace_cluster_role", kwargs, self._replace, "ClusterRole", None, name, body)

    def delete_cluster_role(self, name, body=None, **kwargs):
        return self._op("delete_cluster_role", kwargs, self._delete, "ClusterRole", None, name, body)

    def create_namespaced_role(self, namespace, body, **kwargs):
        return self._op("create_namespaced_role", kwargs, self._create, "Role", namespace, body)

    def read_namespaced_role(self, name, namespace, **kwargs):
        return self._op("read_namespaced_role", kwargs, self._read, "Role", namespace, name)

    def replace_namespaced_role(self, name, namespace, body, **kwargs):
        return self._op("replace_namespaced_role", kwargs, self._replace, "Role", namespace, name, body)

    def delete_namespaced_role(self, name, namespace, body=None, **kwargs):
        return self._op("delete_namespaced_role", kwargs, self._delete, "Role", namespace, name, body)

    def create_cluster_role_binding(self, body, **kwargs):
        return self._op("create_cluster_role_binding", kwargs, self._create, "ClusterRoleBinding", None, body)

    def read_cluster_role_binding(self, name, **kwargs):
        return self._op("read_cluster_role_binding", kwargs, self._read, "ClusterRoleBinding", None, name)

    def replace_cluster_role_binding(self, name, body, **kwargs):
        return self._op(
            "replace_cluster_role_binding", kwargs, self._replace, "ClusterRoleBinding", None, name, body
        )

    def delete_cluster_role_binding(self, name, body=None, **kwargs):
        return self._op(
            "delete_cluster_role_binding", kwargs, self._delete, "ClusterRoleBinding", None, name, body
        )

    def create_namespaced_role_binding(self, namespace, body, **kwargs):
        return self._op("create_namespaced_role_binding", kwargs, self._create, "RoleBinding", namespace, body)

    def read_namespaced_role_binding(self, name, namespace, **kwargs):
        return self._op("read_namespaced_role_binding", kwargs, self._read, "RoleBinding", namespace, name)

    def replace_namespaced_role_binding(self, name, namespace, body, **kwargs):
        return self._op(
            "replace_namespaced_role_binding", kwargs, self._replace, "RoleBinding", namespace, name, body
        )

    def delete_namespaced_role_binding(self, name, namespace, body=None, **kwargs):
        return self._op(
            "delete_namespaced_role_binding", kwargs, self._delete, "RoleBinding", namespace, name, body
        )

    def list_cluster_role_binding(self, limit=None, _continue=None, **kwargs):
        return self._op(
            "list_cluster_role_binding", kwargs, self._list, "ClusterRoleBinding", limit, _continue
        )

    def list_role_binding_for_all_namespaces(self, limit=None, _continue=None, **kwargs):
        return self._op(
            "list_role_binding_for_all_namespaces", kwargs, self._list, "RoleBinding", limit, _continue
        )


@pytest.fixture
def access_config() -> AccessConfig:
    """Return test configuration with small keys and no backoff delay."""
    return AccessConfig(
        key_size=2048,  # Faster for tests
        retry=RetryPolicy(max_attempts=5, initial_delay_seconds=0, max_delay_seconds=0),
    )


@pytest.fixture
def cluster_ca(access_config: AccessConfig) -> CAKeyMaterial:
    """Generate a self-signed cluster CA."""
    return CertificateAuthoritySigner.bootstrap_ca(access_config, common_name="test-cluster-ca")


@pytest.fixture
def ca_dir_on_disk(tmp_path: Path, cluster_ca: CAKeyMaterial) -> Generator[Path]:
    """Write the cluster CA to a kubeadm-style pki directory.

    Creates:
        {tmp}/pki/ca.key
        {tmp}/pki/ca.crt
    """
    ca_dir = tmp_path / "pki"
    write_ca_to_directory(cluster_ca, ca_dir)
    yield ca_dir


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def signer(ledger: InMemoryLedger, access_config: AccessConfig) -> CertificateAuthoritySigner:
    return CertificateAuthoritySigner(ledger, access_config, sleep=no_sleep)


@pytest.fixture
def key_generator(access_config: AccessConfig) -> KeyMaterialGenerator:
    return KeyMaterialGenerator(access_config)


@pytest.fixture
def bundle_writer(access_config: AccessConfig) -> CredentialBundleWriter:
    return CredentialBundleWriter(access_config)


@pytest.fixture
def alice() -> Identity:
    """Return the identity used across lifecycle scenarios."""
    return Identity(name="alice", organization="team-group")


@pytest.fixture
def cluster_endpoint(cluster_ca: CAKeyMaterial) -> ClusterEndpoint:
    """Return an API endpoint trusting the test cluster CA."""
    return ClusterEndpoint(
        name="test-cluster",
        server="https://127.0.0.1:6443",
        ca_data=cluster_ca.certificate_pem,
    )


@pytest.fixture
def pod_reader() -> RoleDefinition:
    """Return a namespaced Role allowing read access to pods."""
    return RoleDefinition(
        name="pod-reader",
        namespace="default",
        rules=(PolicyRule(api_groups=("",), resources=("pods",), verbs=("get", "watch", "list")),),
    )


@pytest.fixture
def fake_rbac() -> FakeRbacApi:
    return FakeRbacApi()


@pytest.fixture
def reconciler(fake_rbac: FakeRbacApi, access_config: AccessConfig) -> RBACReconciler:
    return RBACReconciler(fake_rbac, access_config, sleep=no_sleep)


@pytest.fixture
def orchestrator(
    key_generator: KeyMaterialGenerator,
    signer: CertificateAuthoritySigner,
    bundle_writer: CredentialBundleWriter,
    reconciler: RBACReconciler,
    access_config: AccessConfig,
) -> AccessLifecycleOrchestrator:
    return AccessLifecycleOrchestrator(
        key_generator=key_generator,
        signer=signer,
        bundle_writer=bundle_writer,
        reconciler=reconciler,
        config=access_config,
    )
