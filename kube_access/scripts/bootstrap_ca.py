#!/usr/bin/env python3
"""Bootstrap a self-signed cluster CA for lab clusters."""

import argparse
import sys
from pathlib import Path

from kube_access.lib.ca_store import write_ca_to_directory
from kube_access.lib.cert_utils import get_certificate_serial_hex, serialize_private_key
from kube_access.lib.config import AccessConfig
from kube_access.lib.logging_config import LOGGER
from kube_access.lib.models import BootstrapResult
from kube_access.lib.signer import CertificateAuthoritySigner
from kube_access.lib.ssm_client import SSMClient


def bootstrap_ca(
    config: AccessConfig,
    output_dir: Path,
    common_name: str = "kubernetes",
    ssm_client: SSMClient | None = None,
    cluster: str | None = None,
) -> BootstrapResult:
    """Generate a CA, write it to ``output_dir`` and optionally store it in SSM.

    Args:
        config: Access configuration (key algorithm, CA validity)
        output_dir: Directory receiving ca.key and ca.crt
        common_name: CA subject CN
        ssm_client: SSM client; the CA is stored when given together with ``cluster``
        cluster: Cluster name for the SSM parameter paths

    Returns:
        BootstrapResult with file paths, serial and fingerprint
    """
    ca = CertificateAuthoritySigner.bootstrap_ca(config, common_name=common_name)
    key_path, cert_path = write_ca_to_directory(ca, output_dir)

    if ssm_client is not None and cluster:
        ssm_client.put_cluster_ca(
            config.project_name,
            cluster,
            serialize_private_key(ca.private_key),
            ca.certificate_pem,
        )
        LOGGER.info("Stored CA in SSM under /%s/%s/ca", config.project_name, cluster)

    return BootstrapResult(
        key_path=key_path,
        cert_path=cert_path,
        serial=get_certificate_serial_hex(ca.certificate),
        fingerprint=ca.fingerprint,
    )


def main() -> int:
    """Bootstrap cluster CA.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Bootstrap a self-signed cluster CA")
    parser.add_argument(
        "--output-dir",
        type=Path,
        required=True,
        help="Directory for ca.key and ca.crt",
    )
    parser.add_argument(
        "--common-name",
        default="kubernetes",
        help="CA common name (default: kubernetes)",
    )
    parser.add_argument(
        "--cluster",
        default=None,
        help="Also store the CA in SSM under /<project>/<cluster>/ca",
    )
    args = parser.parse_args()

    try:
        config = AccessConfig.from_env()
        ssm_client = SSMClient(config.region) if args.cluster else None

        LOGGER.info("Bootstrapping cluster CA...")
        result = bootstrap_ca(config, args.output_dir, args.common_name, ssm_client, args.cluster)

        LOGGER.info("Cluster CA created:")
        LOGGER.info("  Key: %s", result.key_path)
        LOGGER.info("  Cert: %s", result.cert_path)
        LOGGER.info("  Serial: %s", result.serial)
        LOGGER.info("  SHA256 fingerprint: %s", result.fingerprint)
        return 0

    except Exception as e:
        LOGGER.error("Bootstrap failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
