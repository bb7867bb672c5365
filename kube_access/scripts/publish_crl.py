#!/usr/bin/env python3
"""Render the CA's revocation list as a signed CRL and publish it."""

import argparse
import sys
from collections.abc import Callable
from pathlib import Path

from cryptography import x509

from kube_access.lib.cert_utils import serialize_crl
from kube_access.lib.config import AccessConfig
from kube_access.lib.logging_config import LOGGER
from kube_access.lib.models import CAKeyMaterial
from kube_access.lib.signer import CertificateAuthoritySigner
from kube_access.lib.sources import add_source_arguments, crl_publisher, load_ca, open_ledger


def publish_crl(
    signer: CertificateAuthoritySigner,
    ca: CAKeyMaterial,
    publish: Callable[[x509.CertificateRevocationList], None] | None = None,
    output: Path | None = None,
) -> x509.CertificateRevocationList:
    """Build the CRL and hand it to ``publish`` and/or write it to ``output``.

    Args:
        signer: Signer whose ledger holds the revocation records
        ca: CA key material signing the CRL
        publish: Callable receiving the CRL (e.g. from ``crl_publisher``)
        output: Extra PEM file destination

    Returns:
        The signed CRL
    """
    crl = signer.build_crl(ca)
    if publish is not None:
        publish(crl)
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(serialize_crl(crl))
        LOGGER.info("Wrote CRL to %s", output)
    return crl


def main() -> int:
    """Publish the CRL.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Render and publish the cluster CA CRL")
    add_source_arguments(parser)
    parser.add_argument("--crl-bucket", default=None, help="S3 bucket receiving the CRL")
    parser.add_argument("--crl-key", default="crl.pem", help="S3 object key (default: crl.pem)")
    parser.add_argument("--output", type=Path, default=None, help="Additional local CRL path")
    args = parser.parse_args()

    try:
        config = AccessConfig.from_env()
        ca = load_ca(config, args.ca_dir, args.cluster)
        ledger = open_ledger(config, args.ledger_file, args.ledger_table, args.ca_dir)
        signer = CertificateAuthoritySigner(ledger, config)

        crl = publish_crl(
            signer,
            ca,
            publish=crl_publisher(config, args.ca_dir, args.crl_bucket, args.crl_key),
            output=args.output,
        )

        LOGGER.info("CRL published:")
        LOGGER.info("  Revoked serials: %d", len(list(crl)))
        LOGGER.info("  Next update: %s", crl.next_update_utc.isoformat())
        return 0

    except Exception as e:
        LOGGER.error("CRL publication failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
