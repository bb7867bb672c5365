#!/usr/bin/env python3
"""Onboard a cluster user: issue a client certificate, write a kubeconfig, bind a role."""

import argparse
import sys
from pathlib import Path

from kube_access.lib.cluster_client import KubernetesClient
from kube_access.lib.config import AccessConfig
from kube_access.lib.errors import AccessError, LifecycleStepError
from kube_access.lib.lifecycle import AccessLifecycleOrchestrator
from kube_access.lib.logging_config import LOGGER
from kube_access.lib.models import CAKeyMaterial, ClusterEndpoint, Identity, OnboardResult, RoleDefinition
from kube_access.lib.sources import add_role_arguments, add_source_arguments, load_ca, load_role, open_ledger


def resolve_endpoint(
    kube: KubernetesClient,
    ca: CAKeyMaterial,
    config: AccessConfig,
    cluster_name: str,
    server: str | None = None,
    namespace: str | None = None,
) -> ClusterEndpoint:
    """Use an explicit server URL with the cluster CA, or discover both from cluster-info."""
    if server:
        return ClusterEndpoint(name=cluster_name, server=server, ca_data=ca.certificate_pem, namespace=namespace)
    return kube.get_cluster_endpoint(cluster_name, config.api_timeout_seconds, namespace)


def onboard_user(
    orchestrator: AccessLifecycleOrchestrator,
    identity: Identity,
    role: RoleDefinition,
    cluster: ClusterEndpoint,
    ca: CAKeyMaterial,
    output: Path,
    validity_days: int | None = None,
) -> OnboardResult:
    """Run the onboarding workflow and write the resulting bundle to ``output``."""
    result = orchestrator.onboard(identity, role, cluster, ca, validity_days)
    orchestrator.bundle_writer.write_bundle(result.bundle, output)
    return result


def main() -> int:
    """Onboard a user.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Onboard a cluster user")
    parser.add_argument("--name", required=True, help="Username (certificate CN)")
    parser.add_argument("--group", default="", help="Group (certificate O)")
    add_role_arguments(parser)
    add_source_arguments(parser)
    parser.add_argument("--kubeconfig", type=Path, default=None, help="Admin kubeconfig used for RBAC")
    parser.add_argument("--context", default=None, help="Admin kubeconfig context")
    parser.add_argument("--cluster-name", default="kubernetes", help="Cluster name inside the bundle")
    parser.add_argument("--server", default=None, help="API server URL (default: read from cluster-info)")
    parser.add_argument("--validity-days", type=int, default=None, help="Certificate lifetime in days")
    parser.add_argument("--output", type=Path, required=True, help="Path of the kubeconfig to write")
    args = parser.parse_args()

    try:
        config = AccessConfig.from_env()
        identity = Identity(name=args.name, organization=args.group)
        role = load_role(args.role_file, args.role, args.namespace)
        ca = load_ca(config, args.ca_dir, args.cluster)
        ledger = open_ledger(config, args.ledger_file, args.ledger_table, args.ca_dir)

        kube = KubernetesClient(args.kubeconfig, args.context)
        cluster = resolve_endpoint(kube, ca, config, args.cluster_name, args.server, role.namespace)
        orchestrator = AccessLifecycleOrchestrator.from_config(config, ledger, kube.rbac)

        result = onboard_user(orchestrator, identity, role, cluster, ca, args.output, args.validity_days)

        LOGGER.info("User onboarded:")
        LOGGER.info("  User: %s (group %s)", identity.name, identity.organization or "-")
        LOGGER.info("  Role: %s", role)
        LOGGER.info("  Serial: %s", result.certificate.serial_hex)
        LOGGER.info("  Expires: %s", result.certificate.not_after.isoformat())
        LOGGER.info("  Kubeconfig: %s", args.output)
        return 0

    except LifecycleStepError as e:
        LOGGER.error(
            "Onboarding failed at %s (completed: %s, safe to retry: %s): %s",
            e.step,
            ", ".join(e.completed_steps) or "none",
            e.retry_safe,
            e.message,
        )
        return 1
    except AccessError as e:
        LOGGER.error("Onboarding failed: %s", e)
        return 1
    except Exception as e:
        LOGGER.error("Onboarding failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
