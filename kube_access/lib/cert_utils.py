"""Certificate utility functions for key generation, serialization, and metadata extraction."""

import uuid
from datetime import UTC, datetime, timedelta

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from kube_access.lib.models import CAKeyMaterial, CertificateMetadata, PrivateKey, PublicKey

SUPPORTED_CURVES: dict[str, type[ec.EllipticCurve]] = {
    "secp256r1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
}


def generate_private_key(key_size: int = 4096) -> rsa.RSAPrivateKey:
    """Generate RSA private key with specified size."""
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def generate_ec_private_key(curve: str = "secp384r1") -> ec.EllipticCurvePrivateKey:
    """Generate EC private key on a named curve.

    Raises:
        ValueError: If curve is not one of SUPPORTED_CURVES
    """
    if curve not in SUPPORTED_CURVES:
        raise ValueError(f"unsupported curve: {curve}")
    return ec.generate_private_key(SUPPORTED_CURVES[curve]())


def serialize_private_key(key: PrivateKey) -> bytes:
    """Serialize private key to PEM format (PKCS8, no encryption)."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def deserialize_private_key(pem_data: bytes) -> PrivateKey:
    """Deserialize private key from PEM bytes (PKCS8 or traditional RSA/EC)."""
    key = serialization.load_pem_private_key(pem_data, password=None)
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError("expected RSA or EC private key")
    return key


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def deserialize_certificate(pem_data: bytes) -> x509.Certificate:
    """Deserialize certificate from PEM bytes."""
    return x509.load_pem_x509_certificate(pem_data)


def serialize_crl(crl: x509.CertificateRevocationList) -> bytes:
    """Serialize CRL to PEM format."""
    return crl.public_bytes(serialization.Encoding.PEM)


def deserialize_crl(pem_data: bytes) -> x509.CertificateRevocationList:
    """Deserialize CRL from PEM bytes."""
    return x509.load_pem_x509_crl(pem_data)


def generate_serial_number() -> int:
    """Generate certificate serial number from UUID4.

    UUID v4 gives ~122 bits of entropy, above the 64-bit CSPRNG minimum.
    Uniqueness per CA is still enforced by the issuance ledger.

    Returns:
        Integer serial number for x509.CertificateBuilder.serial_number()
    """
    return uuid.uuid4().int


def get_certificate_serial_hex(cert: x509.Certificate) -> str:
    """Return certificate serial number as hex with colons (e.g., 3A:F2:B1:...)."""
    return format_serial_hex(cert.serial_number)


def format_serial_hex(serial_number: int) -> str:
    """Format an integer serial as colon-separated hex pairs."""
    serial_hex = f"{serial_number:X}"
    if len(serial_hex) % 2 != 0:
        serial_hex = "0" + serial_hex
    return ":".join(serial_hex[i : i + 2] for i in range(0, len(serial_hex), 2))


def parse_serial_hex(serial_hex: str) -> int:
    """Parse a colon-separated (or plain) hex serial back to an integer."""
    return int(serial_hex.replace(":", ""), 16)


def extract_certificate_metadata(
    cert: x509.Certificate, ca: CAKeyMaterial | None = None
) -> CertificateMetadata:
    """Extract certificate metadata for the issuance ledger.

    Args:
        cert: X.509 client certificate
        ca: Issuing CA, recorded by fingerprint when provided

    Returns:
        CertificateMetadata with status "active" and a ttl 90 days past expiry
    """
    cns = cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    if not cns or not isinstance(cns[0].value, str):
        raise ValueError("CN must be string")
    orgs = cert.subject.get_attributes_for_oid(x509.NameOID.ORGANIZATION_NAME)

    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    issued_at = datetime.now(UTC)
    ttl_datetime = not_after + timedelta(days=90)

    metadata = CertificateMetadata(
        serialNumber=get_certificate_serial_hex(cert),
        clientName=cns[0].value,
        organization=str(orgs[0].value) if orgs else "",
        notBefore=not_before.isoformat(),
        expiry=not_after.isoformat(),
        status="active",
        issuedAt=issued_at.isoformat(),
        ttl=int(ttl_datetime.timestamp()),
    )

    if ca is not None:
        metadata["caFingerprint"] = ca.fingerprint

    return metadata


def validate_certificate_issued_by(client_cert: x509.Certificate, ca_cert: x509.Certificate) -> bool:
    """Verify the client certificate signature against the CA certificate."""
    try:
        client_cert.verify_directly_issued_by(ca_cert)
        return True
    except (ValueError, TypeError, InvalidSignature):
        return False


def extract_csr_public_key(csr: x509.CertificateSigningRequest) -> PublicKey:
    """Extract public key from CSR.

    Raises:
        ValueError: If public key is not RSA or EC
    """
    public_key = csr.public_key()
    if not isinstance(public_key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey)):
        raise ValueError("CSR public key must be RSA or EC type")
    return public_key


def validate_csr_signature(csr: x509.CertificateSigningRequest) -> bool:
    """Verify CSR self-signature to prove private key possession."""
    try:
        return csr.is_signature_valid
    except (ValueError, TypeError):
        return False


def serialize_csr(csr: x509.CertificateSigningRequest) -> bytes:
    """Serialize CSR to PEM format."""
    return csr.public_bytes(serialization.Encoding.PEM)


def deserialize_csr(pem_data: bytes) -> x509.CertificateSigningRequest:
    """Deserialize CSR from PEM bytes."""
    return x509.load_pem_x509_csr(pem_data)
