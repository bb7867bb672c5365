"""Reconciles (identity, role) pairs against cluster RBAC objects.

Each role has one binding named ``<role>-binding`` whose subjects are the
users granted that role. Binding adds the user to the subject list and
unbinding removes it, deleting the binding object once it is empty. All
writes carry the resource version that was read, so concurrent writers
lose with a 409 and retry from a fresh read.
"""

import dataclasses
import functools
import logging
import time
from collections.abc import Callable, Iterator
from typing import Any

from kubernetes import client

from .cluster_client import call_api
from .config import AccessConfig
from .errors import STEP_ROLE_BINDING, STEP_ROLE_UNBINDING, Conflict, NotFound
from .models import BindingState, Identity, PolicyRule, RoleDefinition
from .retry import call_with_retry

logger = logging.getLogger(__name__)

RBAC_API_GROUP = "rbac.authorization.k8s.io"
MANAGED_BY_LABEL = {"app.kubernetes.io/managed-by": "kube-access"}
STEP_ROLE_APPLY = "role apply"
STEP_BINDING_LIST = "binding listing"


def _field(obj: Any, attr: str, key: str | None = None) -> Any:
    """Read a field from either a kubernetes model object or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key or attr)
    return getattr(obj, attr, None)


def _user_names(binding: Any) -> list[str]:
    subjects = _field(binding, "subjects") or []
    return [_field(s, "name") for s in subjects if _field(s, "kind") == "User"]


def _resource_version(obj: Any) -> str | None:
    return _field(_field(obj, "metadata"), "resource_version", "resourceVersion")


def _policy_rules(role_obj: Any) -> tuple[PolicyRule, ...]:
    return tuple(
        PolicyRule(
            api_groups=tuple(_field(rule, "api_groups", "apiGroups") or ()),
            resources=tuple(_field(rule, "resources") or ()),
            verbs=tuple(_field(rule, "verbs") or ()),
        )
        for rule in _field(role_obj, "rules") or []
    )


def user_subject(name: str) -> dict[str, str]:
    return {"kind": "User", "name": name, "apiGroup": RBAC_API_GROUP}


class RBACReconciler:
    """Binds and unbinds identities to roles with idempotent, retried calls."""

    def __init__(
        self,
        rbac_api: Any,
        config: AccessConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize reconciler.

        Args:
            rbac_api: RbacAuthorizationV1Api (or a compatible fake)
            config: Access configuration with timeout, page size and retry policy
            sleep: Backoff sleep function (injectable for tests)
        """
        self.rbac = rbac_api
        self.config = config
        self._sleep = sleep

    def _call(self, verb: str, kind: str, role: RoleDefinition, step: str, **kwargs: Any) -> Any:
        # a RoleBinding to a ClusterRole is namespaced, the role it references is not
        cluster_scoped = role.is_cluster_scoped if kind == "role_binding" else role.kind == "ClusterRole"
        if cluster_scoped:
            method = getattr(self.rbac, f"{verb}_cluster_{kind}")
        else:
            method = getattr(self.rbac, f"{verb}_namespaced_{kind}")
            kwargs["namespace"] = role.namespace
        return call_api(method, step=step, timeout=self.config.api_timeout_seconds, **kwargs)

    def _retry(self, fn: Callable[[], Any], step: str) -> Any:
        return call_with_retry(fn, step=step, policy=self.config.retry, sleep=self._sleep)

    def _read_binding(self, role: RoleDefinition, step: str) -> Any | None:
        try:
            return self._call("read", "role_binding", role, step, name=role.binding_name)
        except NotFound:
            return None

    def _binding_manifest(
        self, role: RoleDefinition, names: list[str], resource_version: str | None = None
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": role.binding_name, "labels": dict(MANAGED_BY_LABEL)}
        if role.namespace is not None:
            metadata["namespace"] = role.namespace
        if resource_version is not None:
            metadata["resourceVersion"] = resource_version
        return {
            "apiVersion": f"{RBAC_API_GROUP}/v1",
            "kind": role.binding_kind,
            "metadata": metadata,
            "roleRef": {"apiGroup": RBAC_API_GROUP, "kind": role.kind, "name": role.name},
            "subjects": [user_subject(name) for name in names],
        }

    def bind(self, identity: Identity, role: RoleDefinition) -> bool:
        """Grant ``role`` to ``identity``.

        Returns:
            True if the binding changed, False if the pair was already bound

        Raises:
            PermissionDenied: If the caller may not manage bindings
            RetriesExhausted: If conflicts or timeouts persisted
        """
        changed = self._retry(functools.partial(self._bind_once, identity, role), STEP_ROLE_BINDING)
        if changed:
            logger.info(
                "Bound %s to %s",
                identity.name,
                role,
                extra={"step": STEP_ROLE_BINDING, "identity": identity.name},
            )
        else:
            logger.info(
                "%s already bound to %s",
                identity.name,
                role,
                extra={"step": STEP_ROLE_BINDING, "identity": identity.name},
            )
        return changed

    def _bind_once(self, identity: Identity, role: RoleDefinition) -> bool:
        existing = self._read_binding(role, STEP_ROLE_BINDING)
        if existing is None:
            # a concurrent create answers 409 AlreadyExists, retried as Conflict
            self._call(
                "create",
                "role_binding",
                role,
                STEP_ROLE_BINDING,
                body=self._binding_manifest(role, [identity.name]),
            )
            return True

        names = _user_names(existing)
        if identity.name in names:
            return False

        self._call(
            "replace",
            "role_binding",
            role,
            STEP_ROLE_BINDING,
            name=role.binding_name,
            body=self._binding_manifest(role, names + [identity.name], _resource_version(existing)),
        )
        return True

    def unbind(self, identity: Identity, role: RoleDefinition) -> bool:
        """Revoke ``role`` from ``identity``.

        Returns:
            True if the identity was bound, False if unbinding was a no-op
        """
        was_bound = self._retry(functools.partial(self._unbind_once, identity, role), STEP_ROLE_UNBINDING)
        if was_bound:
            logger.info(
                "Unbound %s from %s",
                identity.name,
                role,
                extra={"step": STEP_ROLE_UNBINDING, "identity": identity.name},
            )
        return was_bound

    def _unbind_once(self, identity: Identity, role: RoleDefinition) -> bool:
        existing = self._read_binding(role, STEP_ROLE_UNBINDING)
        if existing is None:
            return False

        names = _user_names(existing)
        if identity.name not in names:
            return False

        remaining = [name for name in names if name != identity.name]
        resource_version = _resource_version(existing)

        if remaining:
            self._call(
                "replace",
                "role_binding",
                role,
                STEP_ROLE_UNBINDING,
                name=role.binding_name,
                body=self._binding_manifest(role, remaining, resource_version),
            )
            return True

        try:
            self._call(
                "delete",
                "role_binding",
                role,
                STEP_ROLE_UNBINDING,
                name=role.binding_name,
                body=client.V1DeleteOptions(preconditions=client.V1Preconditions(resource_version=resource_version)),
            )
        except NotFound:
            logger.debug("Binding %s already deleted", role.binding_name)
        return True

    def state(self, identity: Identity, role: RoleDefinition) -> BindingState:
        """Return whether ``identity`` currently holds ``role``."""
        existing = self._retry(functools.partial(self._read_binding, role, STEP_ROLE_BINDING), STEP_ROLE_BINDING)
        if existing is not None and identity.name in _user_names(existing):
            return BindingState.BOUND
        return BindingState.ABSENT

    def list_bindings(self, identity: Identity) -> Iterator[RoleDefinition]:
        """Lazily yield every role bound to ``identity``.

        Cluster role bindings come first, then role bindings across all
        namespaces. Pages of ``list_page_size`` items are fetched on demand.
        """
        for binding in self._paginate(self.rbac.list_cluster_role_binding):
            if identity.name in _user_names(binding):
                yield self._resolve_role(binding)

        for binding in self._paginate(self.rbac.list_role_binding_for_all_namespaces):
            if identity.name in _user_names(binding):
                yield self._resolve_role(binding)

    def _paginate(self, list_fn: Callable[..., Any]) -> Iterator[Any]:
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"limit": self.config.list_page_size}
            if token:
                kwargs["_continue"] = token
            page = self._retry(
                functools.partial(
                    call_api,
                    list_fn,
                    step=STEP_BINDING_LIST,
                    timeout=self.config.api_timeout_seconds,
                    **kwargs,
                ),
                STEP_BINDING_LIST,
            )
            yield from _field(page, "items") or []

            token = _field(_field(page, "metadata"), "_continue", "continue")
            if not token:
                return

    def _resolve_role(self, binding: Any) -> RoleDefinition:
        role_ref = _field(binding, "role_ref", "roleRef")
        ref_kind = _field(role_ref, "kind")
        ref_name = _field(role_ref, "name")
        binding_namespace = _field(_field(binding, "metadata"), "namespace")

        # a RoleBinding may reference a ClusterRole; the grant is still namespaced
        role = RoleDefinition(
            name=ref_name,
            namespace=binding_namespace,
            cluster_role_ref=ref_kind == "ClusterRole" and binding_namespace is not None,
        )
        try:
            role_obj = self._retry(
                functools.partial(self._call, "read", "role", role, STEP_BINDING_LIST, name=ref_name),
                STEP_BINDING_LIST,
            )
        except NotFound:
            logger.warning("Binding references missing %s", role)
            role_obj = None

        return dataclasses.replace(role, rules=_policy_rules(role_obj))

    def apply_role(self, role: RoleDefinition) -> bool:
        """Create or update a Role/ClusterRole so it carries ``role.rules``.

        Returns:
            True if the role was created or its rules changed
        """
        changed = self._retry(functools.partial(self._apply_role_once, role), STEP_ROLE_APPLY)
        if changed:
            logger.info("Applied %s with %d rules", role, len(role.rules), extra={"step": STEP_ROLE_APPLY})
        return changed

    def _role_manifest(self, role: RoleDefinition, resource_version: str | None = None) -> dict[str, Any]:
        manifest = role.to_manifest()
        manifest["metadata"]["labels"] = dict(MANAGED_BY_LABEL)
        if resource_version is not None:
            manifest["metadata"]["resourceVersion"] = resource_version
        return manifest

    def _apply_role_once(self, role: RoleDefinition) -> bool:
        try:
            self._call("create", "role", role, STEP_ROLE_APPLY, body=self._role_manifest(role))
            return True
        except Conflict:
            existing = self._call("read", "role", role, STEP_ROLE_APPLY, name=role.name)

        if _policy_rules(existing) == role.rules:
            return False

        self._call(
            "replace",
            "role",
            role,
            STEP_ROLE_APPLY,
            name=role.name,
            body=self._role_manifest(role, _resource_version(existing)),
        )
        return True

    def remove_role(self, role: RoleDefinition) -> bool:
        """Delete a Role/ClusterRole; returns False if it did not exist."""
        try:
            self._retry(
                functools.partial(self._call, "delete", "role", role, STEP_ROLE_APPLY, name=role.name),
                STEP_ROLE_APPLY,
            )
        except NotFound:
            return False
        logger.info("Removed %s", role, extra={"step": STEP_ROLE_APPLY})
        return True
