"""Filesystem store for cluster CA key material (kubeadm pki layout)."""

import os
from pathlib import Path

from cryptography import x509

from .cert_utils import (
    deserialize_certificate,
    deserialize_private_key,
    serialize_certificate,
    serialize_crl,
    serialize_private_key,
)
from .errors import CAUnavailable
from .models import CAKeyMaterial

CA_CERT_FILENAME = "ca.crt"
CA_KEY_FILENAME = "ca.key"
CA_CRL_FILENAME = "ca.crl"


def load_ca_from_directory(ca_dir: Path) -> CAKeyMaterial:
    """Load CA key and certificate from ``ca_dir`` (e.g. /etc/kubernetes/pki).

    Raises:
        CAUnavailable: If either file is missing or unreadable
    """
    key_path = ca_dir / CA_KEY_FILENAME
    cert_path = ca_dir / CA_CERT_FILENAME

    if not key_path.exists():
        raise CAUnavailable(f"CA key not found: {key_path}")
    if not cert_path.exists():
        raise CAUnavailable(f"CA cert not found: {cert_path}")

    try:
        return CAKeyMaterial(
            private_key=deserialize_private_key(key_path.read_bytes()),
            certificate=deserialize_certificate(cert_path.read_bytes()),
        )
    except (OSError, ValueError) as e:
        raise CAUnavailable(f"failed to load CA from {ca_dir}: {e}", cause=e) from e


def write_ca_to_directory(ca: CAKeyMaterial, ca_dir: Path) -> tuple[Path, Path]:
    """Write CA key (mode 0600) and certificate to ``ca_dir``.

    Returns:
        Tuple of (key_path, cert_path)
    """
    ca_dir.mkdir(parents=True, exist_ok=True)
    key_path = ca_dir / CA_KEY_FILENAME
    cert_path = ca_dir / CA_CERT_FILENAME

    write_private_file(key_path, serialize_private_key(ca.private_key))
    cert_path.write_bytes(serialize_certificate(ca.certificate))
    return key_path, cert_path


def write_crl(crl: x509.CertificateRevocationList, ca_dir: Path) -> Path:
    """Write the CRL next to the CA certificate."""
    crl_path = ca_dir / CA_CRL_FILENAME
    crl_path.write_bytes(serialize_crl(crl))
    return crl_path


def write_private_file(path: Path, content: bytes) -> None:
    """Write ``content`` to ``path`` readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(content)
    os.chmod(path, 0o600)
