#!/usr/bin/env python3
"""Offboard a cluster user: unbind the role, revoke certificates, invalidate bundles."""

import argparse
import sys
from pathlib import Path

from kube_access.lib.ca_store import write_ca_to_directory
from kube_access.lib.cert_utils import serialize_private_key
from kube_access.lib.cluster_client import KubernetesClient
from kube_access.lib.config import AccessConfig, RevocationStrategy
from kube_access.lib.errors import AccessError, LifecycleStepError
from kube_access.lib.kubeconfig import CredentialBundleWriter
from kube_access.lib.lifecycle import AccessLifecycleOrchestrator
from kube_access.lib.logging_config import LOGGER
from kube_access.lib.models import CAKeyMaterial, Identity, OffboardResult
from kube_access.lib.sources import (
    add_role_arguments,
    add_source_arguments,
    crl_publisher,
    load_ca,
    load_role,
    open_ledger,
)
from kube_access.lib.ssm_client import SSMClient

ROTATED_CA_DIRNAME = "rotated"


def store_rotated_ca(
    ca: CAKeyMaterial,
    config: AccessConfig,
    ca_dir: Path | None = None,
    cluster: str | None = None,
) -> str:
    """Persist a rotated CA without overwriting the live one on disk.

    A directory CA goes to ``<ca_dir>/rotated`` for the operator to install;
    an SSM CA is replaced in place.

    Returns:
        Human-readable location of the stored CA
    """
    if ca_dir is not None:
        key_path, _ = write_ca_to_directory(ca, ca_dir / ROTATED_CA_DIRNAME)
        return str(key_path.parent)
    if cluster:
        SSMClient(config.region).put_cluster_ca(
            config.project_name,
            cluster,
            serialize_private_key(ca.private_key),
            ca.certificate_pem,
        )
        return f"ssm:/{config.project_name}/{cluster}/ca"
    raise ValueError("rotated CA has nowhere to be stored")


def main() -> int:
    """Offboard a user.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Offboard a cluster user")
    parser.add_argument("--name", required=True, help="Username (certificate CN)")
    parser.add_argument("--group", default="", help="Group (certificate O)")
    add_role_arguments(parser)
    add_source_arguments(parser)
    parser.add_argument("--kubeconfig", type=Path, default=None, help="Admin kubeconfig used for RBAC")
    parser.add_argument("--context", default=None, help="Admin kubeconfig context")
    parser.add_argument("--no-revoke", action="store_true", help="Only unbind; keep certificates valid for the identity's other roles")
    parser.add_argument(
        "--revocation-strategy",
        choices=[s.value for s in RevocationStrategy],
        default=None,
        help="Override KUBE_ACCESS_REVOCATION_STRATEGY",
    )
    parser.add_argument("--bundle", type=Path, default=None, help="Delivered kubeconfig to mark invalid")
    parser.add_argument("--crl-bucket", default=None, help="S3 bucket receiving the updated CRL")
    args = parser.parse_args()

    try:
        config = AccessConfig.from_env()
        if args.revocation_strategy:
            config.revocation_strategy = RevocationStrategy(args.revocation_strategy)

        identity = Identity(name=args.name, organization=args.group)
        role = load_role(args.role_file, args.role, args.namespace)
        ca = load_ca(config, args.ca_dir, args.cluster) if (args.ca_dir or args.cluster) else None
        ledger = open_ledger(config, args.ledger_file, args.ledger_table, args.ca_dir)
        bundle = CredentialBundleWriter.load_bundle(args.bundle) if args.bundle else None

        kube = KubernetesClient(args.kubeconfig, args.context)
        publisher = crl_publisher(config, args.ca_dir, args.crl_bucket)
        orchestrator = AccessLifecycleOrchestrator.from_config(config, ledger, kube.rbac, publisher)

        result: OffboardResult = orchestrator.offboard(
            identity,
            role,
            revoke=not args.no_revoke,
            ca=ca,
            bundle=bundle,
        )

        if not result.was_bound:
            LOGGER.info("%s was not bound to %s", identity.name, role)
        LOGGER.info("User offboarded:")
        LOGGER.info("  User: %s", identity.name)
        LOGGER.info("  Revoked serials: %s", ", ".join(r.serial_number for r in result.revocations) or "none")
        LOGGER.info("  Invalidated bundles: %d", len(result.invalidated_serials))

        if result.rotated_ca is not None:
            location = store_rotated_ca(result.rotated_ca, config, args.ca_dir, args.cluster)
            LOGGER.info("  Rotated CA: %s (fingerprint %s)", location, result.rotated_ca.fingerprint)
            LOGGER.info("  Users to re-issue: %s", ", ".join(result.identities_to_reissue) or "none")
            LOGGER.info("Next: install the rotated CA and re-issue the listed users")
        return 0

    except LifecycleStepError as e:
        LOGGER.error(
            "Offboarding failed at %s (completed: %s, safe to retry: %s): %s",
            e.step,
            ", ".join(e.completed_steps) or "none",
            e.retry_safe,
            e.message,
        )
        partial = e.partial_result
        if isinstance(partial, OffboardResult) and partial.rotated_ca is not None:
            location = store_rotated_ca(partial.rotated_ca, config, args.ca_dir, args.cluster)
            LOGGER.error("Rotated CA saved to %s before the failure; install it before retrying", location)
        return 1
    except AccessError as e:
        LOGGER.error("Offboarding failed: %s", e)
        return 1
    except Exception as e:
        LOGGER.error("Offboarding failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
