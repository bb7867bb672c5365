"""Resolves CA, ledger, role and CRL destinations from script arguments."""

import argparse
import logging
from collections.abc import Callable
from pathlib import Path

import yaml
from cryptography import x509

from .ca_store import load_ca_from_directory, write_crl
from .cert_utils import serialize_crl
from .config import AccessConfig
from .dynamodb_ledger import DynamoDBLedger
from .errors import CAUnavailable, InvalidRequest
from .ledger import IssuanceLedger, JsonFileLedger
from .models import CAKeyMaterial, RoleDefinition
from .s3_client import S3Client
from .ssm_client import SSMClient

logger = logging.getLogger(__name__)

LEDGER_FILENAME = "issued.json"


def add_source_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the CA and ledger location options shared by the operator scripts."""
    parser.add_argument(
        "--ca-dir",
        type=Path,
        default=None,
        help="Directory holding ca.key and ca.crt (e.g. /etc/kubernetes/pki)",
    )
    parser.add_argument(
        "--cluster",
        default=None,
        help="Cluster name; reads the CA from SSM when --ca-dir is not given",
    )
    parser.add_argument(
        "--ledger-file",
        type=Path,
        default=None,
        help=f"JSON issuance ledger (default: <ca-dir>/{LEDGER_FILENAME})",
    )
    parser.add_argument(
        "--ledger-table",
        default=None,
        help="DynamoDB issuance ledger table (default when no ledger file applies)",
    )


def add_role_arguments(parser: argparse.ArgumentParser) -> None:
    """Add options selecting the role to bind or unbind."""
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--role-file", type=Path, help="Role or ClusterRole manifest (YAML)")
    group.add_argument("--role", help="Name of an existing Role (with --namespace) or ClusterRole")
    parser.add_argument("--namespace", default=None, help="Namespace of --role; omit for a ClusterRole")


def load_ca(config: AccessConfig, ca_dir: Path | None = None, cluster: str | None = None) -> CAKeyMaterial:
    """Load CA key material from a directory, or from SSM for ``cluster``.

    Raises:
        CAUnavailable: If no source was given or the source cannot be read
    """
    if ca_dir is not None:
        return load_ca_from_directory(ca_dir)
    if cluster:
        return SSMClient(config.region).get_cluster_ca(config.project_name, cluster)
    raise CAUnavailable("no CA source: pass --ca-dir or --cluster")


def open_ledger(
    config: AccessConfig,
    ledger_file: Path | None = None,
    ledger_table: str | None = None,
    ca_dir: Path | None = None,
) -> IssuanceLedger:
    """Open the issuance ledger for the selected CA.

    Precedence: explicit file, explicit table, ``<ca_dir>/issued.json``,
    then the configured DynamoDB table.
    """
    if ledger_file is not None:
        return JsonFileLedger(ledger_file)
    if ledger_table:
        return DynamoDBLedger(ledger_table, config.region)
    if ca_dir is not None:
        return JsonFileLedger(ca_dir / LEDGER_FILENAME)
    return DynamoDBLedger(config.ledger_table, config.region)


def load_role(role_file: Path | None = None, name: str | None = None, namespace: str | None = None) -> RoleDefinition:
    """Build a RoleDefinition from a manifest file or a role name.

    Raises:
        InvalidRequest: If the manifest is not a valid Role/ClusterRole
    """
    if role_file is not None:
        try:
            return RoleDefinition.from_manifest(yaml.safe_load(role_file.read_text()) or {})
        except (ValueError, yaml.YAMLError) as e:
            raise InvalidRequest(f"invalid role manifest {role_file}: {e}", cause=e) from e
    if not name:
        raise InvalidRequest("a role name or role manifest is required")
    return RoleDefinition(name=name, namespace=namespace)


def crl_publisher(
    config: AccessConfig,
    ca_dir: Path | None = None,
    bucket: str | None = None,
    key: str = "crl.pem",
) -> Callable[[x509.CertificateRevocationList], None]:
    """Return a callable writing each CRL next to the CA and/or to S3."""

    def publish(crl: x509.CertificateRevocationList) -> None:
        if ca_dir is not None:
            path = write_crl(crl, ca_dir)
            logger.info("Wrote CRL to %s", path)
        if bucket:
            version = S3Client(config.region).upload_crl(bucket, serialize_crl(crl), key)
            logger.info("Uploaded CRL to s3://%s/%s (version %s)", bucket, key, version or "unversioned")

    return publish
