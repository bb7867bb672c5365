"""Certificate builder for X.509 certificate and CRL construction."""

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .cert_utils import (
    extract_csr_public_key,
    generate_serial_number,
    parse_serial_hex,
    validate_csr_signature,
)
from .config import DistinguishedName
from .models import CAKeyMaterial, PrivateKey, RevocationRecord

REVOCATION_REASONS: dict[str, x509.ReasonFlags] = {flag.name: flag for flag in x509.ReasonFlags}


def _key_usage(is_ca: bool) -> x509.KeyUsage:
    """Digital signature and key encipherment, plus cert and CRL signing for a CA."""
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=True,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=is_ca,
        crl_sign=is_ca,
        encipher_only=False,
        decipher_only=False,
    )


class CertificateBuilder:
    """Builds the cluster CA certificate, client certificates and CRLs."""

    @staticmethod
    def build_root_ca(
        subject_dn: DistinguishedName,
        private_key: PrivateKey,
        validity_years: int,
    ) -> x509.Certificate:
        """Build self-signed cluster CA certificate.

        Args:
            subject_dn: Distinguished name for certificate subject
            private_key: CA private key for signing
            validity_years: Certificate validity period in years

        Returns:
            Self-signed X.509 certificate with CA extensions
        """
        subject = subject_dn.to_x509_name()
        not_before = datetime.now(timezone.utc)
        not_after = not_before + timedelta(days=validity_years * 365)

        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(private_key.public_key())
            .serial_number(generate_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=None),
                critical=True,
            )
            .add_extension(_key_usage(is_ca=True), critical=True)
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                critical=False,
            )
        )

        return builder.sign(private_key, hashes.SHA256())

    @staticmethod
    def build_client_certificate(
        csr: x509.CertificateSigningRequest,
        ca: CAKeyMaterial,
        validity_days: int,
        serial_number: int | None = None,
    ) -> x509.Certificate:
        """Build client certificate from CSR, signed by the cluster CA.

        The CA never sees the client's private key: subject and public key
        come from the CSR, whose self-signature proves key possession.
        ``not_after`` is clamped to the CA certificate's own expiry.

        Args:
            csr: Certificate signing request from client
            ca: Cluster CA key material (issuer)
            validity_days: Certificate validity period in days
            serial_number: Serial to use; a random one is generated when None

        Returns:
            X.509 end-entity certificate usable for Kubernetes client auth

        Raises:
            ValueError: If CSR signature is invalid
        """
        if not validate_csr_signature(csr):
            raise ValueError("CSR signature validation failed")

        public_key = extract_csr_public_key(csr)

        not_before = datetime.now(timezone.utc)
        not_after = min(not_before + timedelta(days=validity_days), ca.certificate.not_valid_after_utc)

        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca.certificate.subject)
            .public_key(public_key)
            .serial_number(serial_number if serial_number is not None else generate_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(_key_usage(is_ca=False), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage([x509.oid.ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca.private_key.public_key()),
                critical=False,
            )
        )

        return builder.sign(ca.private_key, hashes.SHA256())

    @staticmethod
    def build_crl(
        ca: CAKeyMaterial,
        records: Iterable[RevocationRecord],
        validity_days: int,
        crl_number: int,
    ) -> x509.CertificateRevocationList:
        """Build a CRL listing every revoked serial, signed by the cluster CA.

        Args:
            ca: Cluster CA key material
            records: Revocation records to include
            validity_days: Days until next_update
            crl_number: Monotonic CRL number

        Returns:
            Signed X.509 certificate revocation list
        """
        last_update = datetime.now(timezone.utc)

        builder = (
            x509.CertificateRevocationListBuilder()
            .issuer_name(ca.certificate.subject)
            .last_update(last_update)
            .next_update(last_update + timedelta(days=validity_days))
            .add_extension(x509.CRLNumber(crl_number), critical=False)
        )

        for record in records:
            revoked = (
                x509.RevokedCertificateBuilder()
                .serial_number(parse_serial_hex(record.serial_number))
                .revocation_date(record.revoked_at)
            )
            reason = REVOCATION_REASONS.get(record.reason)
            if reason is not None and reason is not x509.ReasonFlags.unspecified:
                revoked = revoked.add_extension(x509.CRLReason(reason), critical=False)
            builder = builder.add_revoked_certificate(revoked.build())

        return builder.sign(ca.private_key, hashes.SHA256())
