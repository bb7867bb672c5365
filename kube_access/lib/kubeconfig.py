"""Assembles client credentials into a kubeconfig bundle for kubectl."""

import base64
import logging
from datetime import UTC, datetime
from pathlib import Path

import yaml
from cryptography import x509

from .ca_store import write_private_file
from .config import AccessConfig
from .errors import STEP_BUNDLE_ASSEMBLY, STEP_BUNDLE_INVALIDATION, IncompleteInputs
from .models import (
    AccessBundle,
    ClusterEndpoint,
    Identity,
    KeyPair,
    KubeconfigDocument,
    SignedCertificate,
)

logger = logging.getLogger(__name__)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def context_name(identity: Identity, cluster: ClusterEndpoint) -> str:
    return f"{identity.name}@{cluster.name}"


class CredentialBundleWriter:
    """Builds and persists AccessBundles. Never transmits them."""

    def __init__(self, config: AccessConfig) -> None:
        self.config = config

    def assemble_bundle(
        self,
        cluster: ClusterEndpoint | None,
        cert: SignedCertificate | None,
        key: KeyPair | None,
        identity: Identity,
    ) -> AccessBundle:
        """Combine endpoint, trust anchor, certificate and key into one kubeconfig.

        Args:
            cluster: API server endpoint with its CA certificate
            cert: Client certificate issued to ``identity``
            key: Private key matching ``cert``
            identity: Owner of the bundle

        Returns:
            AccessBundle with a single cluster, user and context

        Raises:
            IncompleteInputs: If an input is missing or the parts do not belong together
        """
        if cluster is None:
            raise IncompleteInputs("cluster endpoint is missing", step=STEP_BUNDLE_ASSEMBLY)
        if not cluster.server:
            raise IncompleteInputs(f"cluster {cluster.name} has no server URL", step=STEP_BUNDLE_ASSEMBLY)
        if not cluster.ca_data:
            raise IncompleteInputs(f"cluster {cluster.name} has no CA trust anchor", step=STEP_BUNDLE_ASSEMBLY)
        if cert is None:
            raise IncompleteInputs("client certificate is missing", step=STEP_BUNDLE_ASSEMBLY)
        if key is None:
            raise IncompleteInputs("client private key is missing", step=STEP_BUNDLE_ASSEMBLY)
        if cert.identity != identity:
            raise IncompleteInputs(
                f"certificate was issued to {cert.identity.name}, not {identity.name}",
                step=STEP_BUNDLE_ASSEMBLY,
            )
        if not key.matches(cert.certificate):
            raise IncompleteInputs("private key does not match client certificate", step=STEP_BUNDLE_ASSEMBLY)

        try:
            x509.load_pem_x509_certificate(cluster.ca_data)
        except ValueError as e:
            raise IncompleteInputs(
                f"cluster {cluster.name} CA data is not a PEM certificate", step=STEP_BUNDLE_ASSEMBLY, cause=e
            ) from e

        context = context_name(identity, cluster)
        context_body = {"cluster": cluster.name, "user": identity.name}
        if cluster.namespace:
            context_body["namespace"] = cluster.namespace

        document: KubeconfigDocument = {
            "apiVersion": "v1",
            "kind": "Config",
            "preferences": {},
            "clusters": [
                {
                    "name": cluster.name,
                    "cluster": {
                        "server": cluster.server,
                        "certificate-authority-data": _b64(cluster.ca_data),
                    },
                }
            ],
            "users": [
                {
                    "name": identity.name,
                    "user": {
                        "client-certificate-data": _b64(cert.pem),
                        "client-key-data": _b64(key.private_key_pem()),
                    },
                }
            ],
            "contexts": [{"name": context, "context": context_body}],
            "current-context": context,
        }

        logger.info(
            "Assembled bundle for %s with context %s",
            identity.name,
            context,
            extra={"step": STEP_BUNDLE_ASSEMBLY, "identity": identity.name},
        )
        return AccessBundle(
            identity=identity,
            serial_number=cert.serial_hex,
            document=document,
            created_at=datetime.now(UTC),
        )

    @staticmethod
    def render(bundle: AccessBundle) -> str:
        """Render the bundle as kubeconfig YAML."""
        return yaml.safe_dump(dict(bundle.document), default_flow_style=False, sort_keys=False)

    def write_bundle(self, bundle: AccessBundle, path: Path) -> Path:
        """Write the bundle to ``path`` readable by the owner only."""
        write_private_file(path, self.render(bundle).encode("utf-8"))
        logger.info(
            "Wrote bundle for %s to %s",
            bundle.identity.name,
            path,
            extra={"step": STEP_BUNDLE_ASSEMBLY, "identity": bundle.identity.name},
        )
        return path

    @staticmethod
    def load_bundle(path: Path) -> AccessBundle:
        """Read a kubeconfig written by ``write_bundle`` back into an AccessBundle.

        Raises:
            IncompleteInputs: If the file is not a single-user kubeconfig
        """
        document = yaml.safe_load(path.read_text())
        try:
            cert_pem = base64.b64decode(document["users"][0]["user"]["client-certificate-data"])
        except (KeyError, IndexError, TypeError) as e:
            raise IncompleteInputs(f"{path} is not a kube-access bundle", step=STEP_BUNDLE_ASSEMBLY, cause=e) from e
        if not document.get("current-context"):
            raise IncompleteInputs(f"{path} has no current-context", step=STEP_BUNDLE_ASSEMBLY)

        certificate = x509.load_pem_x509_certificate(cert_pem)
        identity = Identity.from_x509_name(certificate.subject)
        signed = SignedCertificate(identity=identity, certificate=certificate)
        return AccessBundle(
            identity=identity,
            serial_number=signed.serial_hex,
            document=document,
            created_at=datetime.fromtimestamp(path.stat().st_mtime, UTC),
        )

    @staticmethod
    def invalidate(bundle: AccessBundle, reason: str = "offboarded") -> AccessBundle:
        """Mark a delivered bundle invalid. Idempotent; keeps the first timestamp."""
        if bundle.invalidated_at is None:
            bundle.invalidated_at = datetime.now(UTC)
            bundle.invalidation_reason = reason
            logger.info(
                "Invalidated bundle %s for %s: %s",
                bundle.serial_number,
                bundle.identity.name,
                reason,
                extra={"step": STEP_BUNDLE_INVALIDATION, "identity": bundle.identity.name},
            )
        return bundle
