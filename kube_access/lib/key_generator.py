"""Key pair and certificate signing request generation."""

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .cert_utils import SUPPORTED_CURVES, generate_ec_private_key, generate_private_key
from .config import AccessConfig
from .errors import STEP_CERTIFICATE_REQUEST, InvalidIdentity, InvalidRequest
from .models import CertificateSigningRequest, Identity, KeyPair


class KeyMaterialGenerator:
    """Generates client key pairs and CSRs; stateless apart from entropy."""

    def __init__(self, config: AccessConfig) -> None:
        """Initialize generator, enforcing the configured minimum key strength.

        Args:
            config: Access configuration with key algorithm and size

        Raises:
            InvalidRequest: If the algorithm is unknown or too weak
        """
        if config.key_algorithm == "rsa":
            if config.key_size < config.min_rsa_key_size:
                raise InvalidRequest(
                    f"RSA key size {config.key_size} below minimum {config.min_rsa_key_size}"
                )
        elif config.key_algorithm == "ec":
            if config.ec_curve not in SUPPORTED_CURVES:
                raise InvalidRequest(f"unsupported EC curve: {config.ec_curve}")
        else:
            raise InvalidRequest(f"unsupported key algorithm: {config.key_algorithm}")

        self.config = config

    def generate_key_pair(self) -> KeyPair:
        """Generate a fresh private key for one identity."""
        if self.config.key_algorithm == "ec":
            return KeyPair(private_key=generate_ec_private_key(self.config.ec_curve))
        return KeyPair(private_key=generate_private_key(self.config.key_size))

    def create_csr(self, identity: Identity, key_pair: KeyPair) -> CertificateSigningRequest:
        """Build a CSR with subject O=<organization>, CN=<name>.

        Args:
            identity: Identity whose name/organization become the subject
            key_pair: Key pair proving possession via the CSR signature

        Returns:
            Unconsumed CertificateSigningRequest

        Raises:
            InvalidIdentity: If the identity cannot be encoded in a subject
        """
        try:
            subject = identity.to_x509_name()
        except InvalidIdentity as e:
            e.step = STEP_CERTIFICATE_REQUEST
            raise

        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(subject)
            .sign(key_pair.private_key, hashes.SHA256())
        )
        return CertificateSigningRequest(identity=identity, csr=csr)
