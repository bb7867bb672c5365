"""Certificate authority signer: issuance, revocation, CRLs and CA rotation."""

import functools
import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, date, datetime

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from .cert_utils import (
    extract_certificate_metadata,
    generate_ec_private_key,
    generate_private_key,
    generate_serial_number,
)
from .certificate_builder import CertificateBuilder
from .config import AccessConfig, DistinguishedName
from .errors import (
    STEP_CERTIFICATE_SIGNING,
    STEP_REVOCATION,
    CAUnavailable,
    InvalidIdentity,
    InvalidRequest,
    NotFound,
    SigningError,
)
from .ledger import IssuanceLedger
from .models import (
    CAKeyMaterial,
    CARotationResult,
    CertificateSigningRequest,
    Identity,
    KeyPair,
    RevocationRecord,
    SignedCertificate,
)
from .retry import call_with_retry

logger = logging.getLogger(__name__)

MAX_SERIAL_ATTEMPTS = 5
ROTATED_SUFFIX = " - rotated "


class CertificateAuthoritySigner:
    """Signs client CSRs against the cluster CA and owns its issuance ledger."""

    def __init__(
        self,
        ledger: IssuanceLedger,
        config: AccessConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize signer.

        Args:
            ledger: Issuance ledger for this CA (serials and revocations)
            config: Access configuration with validity and subject policy
            sleep: Backoff sleep function (injectable for tests)
        """
        self.ledger = ledger
        self.config = config
        self._sleep = sleep
        self._claim_lock = threading.Lock()

    def sign(
        self,
        csr: CertificateSigningRequest,
        ca: CAKeyMaterial | None,
        validity_days: int | None = None,
    ) -> SignedCertificate:
        """Sign a CSR, allocating a serial never issued before by this CA.

        Args:
            csr: Unconsumed signing request
            ca: Cluster CA key material
            validity_days: Certificate lifetime, defaults to client_validity_days

        Returns:
            SignedCertificate recorded in the issuance ledger

        Raises:
            InvalidRequest: If validity_days is not a positive integer
            CAUnavailable: If CA key material is missing, mismatched or expired
            InvalidIdentity: If the CSR subject violates subject policy
            SigningError: If the CSR was already consumed or signing fails
        """
        if validity_days is None:
            validity_days = self.config.client_validity_days
        if isinstance(validity_days, bool) or not isinstance(validity_days, int) or validity_days <= 0:
            raise InvalidRequest(
                f"validity_days must be a positive integer, got {validity_days!r}",
                step=STEP_CERTIFICATE_SIGNING,
            )
        if validity_days > self.config.recommended_max_validity_days:
            logger.warning(
                "Issuing %s for %d days, above recommended maximum of %d",
                csr.identity.name,
                validity_days,
                self.config.recommended_max_validity_days,
                extra={"step": STEP_CERTIFICATE_SIGNING, "identity": csr.identity.name},
            )

        self._check_ca(ca)
        self._check_subject(csr)

        with self._claim_lock:
            if csr.consumed:
                raise SigningError("CSR has already been consumed", step=STEP_CERTIFICATE_SIGNING)
            csr.consumed = True

        try:
            signed = self._issue(csr, ca, validity_days)
        except BaseException:
            csr.consumed = False
            raise

        logger.info(
            "Issued certificate %s for %s, expires %s",
            signed.serial_hex,
            signed.identity.name,
            signed.not_after.isoformat(),
            extra={"step": STEP_CERTIFICATE_SIGNING, "identity": signed.identity.name},
        )
        return signed

    def _issue(self, csr: CertificateSigningRequest, ca: CAKeyMaterial, validity_days: int) -> SignedCertificate:
        for _ in range(MAX_SERIAL_ATTEMPTS):
            try:
                certificate = CertificateBuilder.build_client_certificate(
                    csr=csr.csr,
                    ca=ca,
                    validity_days=validity_days,
                    serial_number=generate_serial_number(),
                )
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                raise SigningError(str(e), step=STEP_CERTIFICATE_SIGNING, cause=e) from e

            metadata = extract_certificate_metadata(certificate, ca)
            recorded = call_with_retry(
                functools.partial(self.ledger.record_issuance, metadata),
                step=STEP_CERTIFICATE_SIGNING,
                policy=self.config.retry,
                sleep=self._sleep,
            )
            if recorded:
                return SignedCertificate(identity=csr.identity, certificate=certificate)

            logger.warning("Serial collision on %s, drawing a new serial", metadata["serialNumber"])

        raise SigningError(
            f"could not allocate a unique serial in {MAX_SERIAL_ATTEMPTS} attempts",
            step=STEP_CERTIFICATE_SIGNING,
        )

    def _check_ca(self, ca: CAKeyMaterial | None) -> None:
        if ca is None or ca.private_key is None or ca.certificate is None:
            raise CAUnavailable("CA key material not loaded", step=STEP_CERTIFICATE_SIGNING)

        if ca.certificate.not_valid_after_utc <= datetime.now(UTC):
            raise CAUnavailable(
                f"CA certificate expired at {ca.certificate.not_valid_after_utc.isoformat()}",
                step=STEP_CERTIFICATE_SIGNING,
            )

        if not KeyPair(private_key=ca.private_key).matches(ca.certificate):
            raise CAUnavailable("CA private key does not match CA certificate", step=STEP_CERTIFICATE_SIGNING)

    def _check_subject(self, csr: CertificateSigningRequest) -> None:
        subject_identity = Identity.from_x509_name(csr.csr.subject)
        if subject_identity != csr.identity:
            raise InvalidIdentity(
                f"CSR subject {csr.csr.subject.rfc4514_string()} does not match identity {csr.identity.name}",
                step=STEP_CERTIFICATE_SIGNING,
            )
        if csr.identity.name.startswith("system:"):
            raise InvalidIdentity(
                f"subject name {csr.identity.name} uses the reserved system: prefix",
                step=STEP_CERTIFICATE_SIGNING,
            )
        if csr.identity.organization in self.config.forbidden_groups:
            raise InvalidIdentity(
                f"group {csr.identity.organization} may not be granted by client certificate",
                step=STEP_CERTIFICATE_SIGNING,
            )

    def revoke(self, serial_number: str, reason: str = "cessation_of_operation") -> RevocationRecord:
        """Append a revocation record for ``serial_number``.

        Raises:
            NotFound: If the serial was never issued by this CA
        """
        if reason not in x509.ReasonFlags.__members__:
            raise InvalidRequest(f"unknown revocation reason: {reason}", step=STEP_REVOCATION)

        try:
            record = call_with_retry(
                functools.partial(self.ledger.revoke, serial_number, datetime.now(UTC), reason),
                step=STEP_REVOCATION,
                policy=self.config.retry,
                sleep=self._sleep,
            )
        except NotFound as e:
            e.step = STEP_REVOCATION
            raise
        logger.info(
            "Revoked %s (%s)",
            record.serial_number,
            record.reason,
            extra={"step": STEP_REVOCATION, "identity": record.identity_name},
        )
        return record

    def revoke_identity(self, identity: Identity, reason: str = "cessation_of_operation") -> list[RevocationRecord]:
        """Revoke every active certificate issued to ``identity``."""
        active = call_with_retry(
            functools.partial(self.ledger.active_certificates, identity.name),
            step=STEP_REVOCATION,
            policy=self.config.retry,
            sleep=self._sleep,
        )
        return [self.revoke(item["serialNumber"], reason) for item in active]

    def revocations(self) -> list[RevocationRecord]:
        """Return the CA-wide revocation list."""
        return self.ledger.revocations()

    def build_crl(self, ca: CAKeyMaterial) -> x509.CertificateRevocationList:
        """Render the current revocation list as a CRL signed by ``ca``."""
        self._check_ca(ca)
        records = self.revocations()
        crl = CertificateBuilder.build_crl(
            ca=ca,
            records=records,
            validity_days=self.config.crl_validity_days,
            crl_number=int(datetime.now(UTC).timestamp() * 1000),
        )
        logger.info("Built CRL with %d revoked serials", len(records), extra={"step": STEP_REVOCATION})
        return crl

    def rotate_ca(self, ca: CAKeyMaterial) -> CARotationResult:
        """Replace the cluster CA with a freshly generated self-signed CA.

        Rotation invalidates every certificate signed by the old CA, so the
        result lists the identities whose credentials must be re-issued.
        """
        if isinstance(ca.private_key, ec.EllipticCurvePrivateKey):
            new_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey = generate_ec_private_key(
                ca.private_key.curve.name
            )
        else:
            new_key = generate_private_key(max(ca.private_key.key_size, self.config.min_rsa_key_size))

        base_cn = ca.common_name.split(ROTATED_SUFFIX)[0] or "kubernetes"
        orgs = ca.certificate.subject.get_attributes_for_oid(x509.NameOID.ORGANIZATION_NAME)
        dn = DistinguishedName(
            organization=str(orgs[0].value) if orgs else self.config.ca_organization,
            common_name=f"{base_cn}{ROTATED_SUFFIX}{date.today().isoformat()}",
        )
        new_cert = CertificateBuilder.build_root_ca(dn, new_key, self.config.ca_validity_years)
        new_ca = CAKeyMaterial(private_key=new_key, certificate=new_cert)

        previous = ca.fingerprint
        identities = sorted(
            {
                item["clientName"]
                for item in self.ledger.active_certificates()
                if item.get("caFingerprint", previous) == previous
            }
        )
        logger.info(
            "Rotated CA %s -> %s, %d identities need re-issue",
            previous[:16],
            new_ca.fingerprint[:16],
            len(identities),
            extra={"step": STEP_REVOCATION},
        )
        return CARotationResult(new_ca=new_ca, previous_fingerprint=previous, identities_to_reissue=identities)

    @staticmethod
    def bootstrap_ca(config: AccessConfig, common_name: str = "kubernetes") -> CAKeyMaterial:
        """Generate a self-signed cluster CA (lab clusters and tests)."""
        if config.key_algorithm == "ec":
            key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey = generate_ec_private_key(config.ec_curve)
        else:
            key = generate_private_key(config.key_size)
        dn = DistinguishedName(organization=config.ca_organization, common_name=common_name)
        certificate = CertificateBuilder.build_root_ca(dn, key, config.ca_validity_years)
        return CAKeyMaterial(private_key=key, certificate=certificate)
