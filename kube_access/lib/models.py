"""Typed values passed between credential lifecycle stages."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, NotRequired, TypedDict

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509 import oid

from .errors import InvalidIdentity

PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey
PublicKey = rsa.RSAPublicKey | ec.EllipticCurvePublicKey

# X.509 upper bound for CN (RFC 5280 ub-common-name)
MAX_SUBJECT_LENGTH = 64
SUBJECT_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9@._:+-]*")


class BindingState(StrEnum):
    """RBAC state of an (Identity, RoleDefinition) pair."""

    ABSENT = "Absent"
    BOUND = "Bound"


class CertificateMetadata(TypedDict):
    """Issuance ledger item for a client certificate."""

    serialNumber: str
    clientName: str
    organization: str
    status: str
    issuedAt: str
    notBefore: str
    expiry: str
    ttl: int
    caFingerprint: NotRequired[str]
    revokedAt: NotRequired[str]
    revocationReason: NotRequired[str]
    bundleInvalidatedAt: NotRequired[str]


class KubeconfigCluster(TypedDict):
    name: str
    cluster: dict[str, str]


class KubeconfigUser(TypedDict):
    name: str
    user: dict[str, str]


class KubeconfigContext(TypedDict):
    name: str
    context: dict[str, str]


KubeconfigDocument = TypedDict(
    "KubeconfigDocument",
    {
        "apiVersion": str,
        "kind": str,
        "preferences": dict[str, Any],
        "clusters": list[KubeconfigCluster],
        "users": list[KubeconfigUser],
        "contexts": list[KubeconfigContext],
        "current-context": str,
    },
)


def _validate_subject_value(value: str, label: str, allow_empty: bool = False) -> None:
    if not value:
        if allow_empty:
            return
        raise InvalidIdentity(f"{label} must not be empty")
    if len(value) > MAX_SUBJECT_LENGTH:
        raise InvalidIdentity(f"{label} exceeds {MAX_SUBJECT_LENGTH} characters: {value[:16]}...")
    if not SUBJECT_PATTERN.fullmatch(value):
        raise InvalidIdentity(f"{label} contains characters not allowed in a certificate subject: {value!r}")


@dataclass(frozen=True)
class Identity:
    """Cluster user identity.

    ``name`` becomes the certificate CN (the Kubernetes username) and
    ``organization`` the certificate O (the Kubernetes group).
    """

    name: str
    organization: str = ""

    def validate(self) -> None:
        """Raise InvalidIdentity if the identity cannot be encoded in a subject."""
        _validate_subject_value(self.name, "subject name")
        _validate_subject_value(self.organization, "organization", allow_empty=True)

    def to_x509_name(self) -> x509.Name:
        """Convert to the certificate subject Kubernetes maps to user and group."""
        self.validate()
        attributes = []
        if self.organization:
            attributes.append(x509.NameAttribute(oid.NameOID.ORGANIZATION_NAME, self.organization))
        attributes.append(x509.NameAttribute(oid.NameOID.COMMON_NAME, self.name))
        return x509.Name(attributes)

    @classmethod
    def from_x509_name(cls, name: x509.Name) -> "Identity":
        """Recover the identity encoded in a certificate or CSR subject."""
        cns = name.get_attributes_for_oid(oid.NameOID.COMMON_NAME)
        orgs = name.get_attributes_for_oid(oid.NameOID.ORGANIZATION_NAME)
        cn = str(cns[0].value) if cns else ""
        org = str(orgs[0].value) if orgs else ""
        return cls(name=cn, organization=org)


@dataclass
class KeyPair:
    """Private key owned by an identity until its bundle is handed off."""

    private_key: PrivateKey = field(repr=False)

    @property
    def public_key(self) -> PublicKey:
        return self.private_key.public_key()

    @property
    def algorithm(self) -> str:
        if isinstance(self.private_key, rsa.RSAPrivateKey):
            return f"RSA-{self.private_key.key_size}"
        return f"EC-{self.private_key.curve.name}"

    def private_key_pem(self) -> bytes:
        """Serialize private key to PEM format (PKCS8, no encryption)."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def matches(self, certificate: x509.Certificate) -> bool:
        """Return True if the certificate carries this key pair's public key."""
        cert_public = certificate.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        own_public = self.public_key.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return cert_public == own_public


@dataclass
class CertificateSigningRequest:
    """Unsigned request for an identity; consumed exactly once by the signer."""

    identity: Identity
    csr: x509.CertificateSigningRequest
    consumed: bool = False

    @property
    def pem(self) -> bytes:
        return self.csr.public_bytes(serialization.Encoding.PEM)


@dataclass(frozen=True)
class SignedCertificate:
    """Client certificate issued by the cluster CA."""

    identity: Identity
    certificate: x509.Certificate

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def serial_hex(self) -> str:
        from .cert_utils import get_certificate_serial_hex

        return get_certificate_serial_hex(self.certificate)

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)


@dataclass(frozen=True)
class CAKeyMaterial:
    """Cluster CA private key and certificate (the trust anchor)."""

    private_key: PrivateKey = field(repr=False)
    certificate: x509.Certificate

    @property
    def certificate_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @property
    def common_name(self) -> str:
        cns = self.certificate.subject.get_attributes_for_oid(oid.NameOID.COMMON_NAME)
        return str(cns[0].value) if cns else ""

    @property
    def fingerprint(self) -> str:
        return self.certificate.fingerprint(hashes.SHA256()).hex()


@dataclass(frozen=True)
class ClusterEndpoint:
    """API server address and the CA trust anchor clients must pin."""

    name: str
    server: str
    ca_data: bytes
    namespace: str | None = None


@dataclass
class AccessBundle:
    """Portable kubeconfig handed to the end user.

    The invalidation fields are advisory: a delivered bundle cannot be
    deleted remotely, so offboarding only records intent and time.
    """

    identity: Identity
    serial_number: str
    document: KubeconfigDocument
    created_at: datetime
    invalidated_at: datetime | None = None
    invalidation_reason: str | None = None

    @property
    def current_context(self) -> str:
        return self.document["current-context"]

    @property
    def context_names(self) -> list[str]:
        return [context["name"] for context in self.document["contexts"]]

    @property
    def is_valid(self) -> bool:
        return self.invalidated_at is None


@dataclass(frozen=True)
class PolicyRule:
    """One (apiGroups, resources, verbs) permission triple."""

    api_groups: tuple[str, ...]
    resources: tuple[str, ...]
    verbs: tuple[str, ...]

    def to_manifest(self) -> dict[str, list[str]]:
        return {
            "apiGroups": list(self.api_groups),
            "resources": list(self.resources),
            "verbs": list(self.verbs),
        }


@dataclass(frozen=True)
class RoleDefinition:
    """Role (namespace set) or ClusterRole (namespace None) with ordered rules.

    ``cluster_role_ref`` marks a ClusterRole granted inside ``namespace``
    through a RoleBinding.
    """

    name: str
    namespace: str | None = None
    rules: tuple[PolicyRule, ...] = ()
    cluster_role_ref: bool = False

    @property
    def is_cluster_scoped(self) -> bool:
        return self.namespace is None

    @property
    def kind(self) -> str:
        return "ClusterRole" if self.is_cluster_scoped or self.cluster_role_ref else "Role"

    @property
    def binding_kind(self) -> str:
        return "ClusterRoleBinding" if self.is_cluster_scoped else "RoleBinding"

    @property
    def binding_name(self) -> str:
        return f"{self.name}-binding"

    def __str__(self) -> str:
        if self.namespace is None:
            return f"{self.kind}/{self.name}"
        return f"{self.kind}/{self.name}@{self.namespace}"

    def to_manifest(self) -> dict[str, Any]:
        metadata: dict[str, str] = {"name": self.name}
        if self.namespace is not None and not self.cluster_role_ref:
            metadata["namespace"] = self.namespace
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": self.kind,
            "metadata": metadata,
            "rules": [rule.to_manifest() for rule in self.rules],
        }

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> "RoleDefinition":
        """Parse a Role or ClusterRole manifest (as loaded from YAML).

        Raises:
            ValueError: If kind is not Role/ClusterRole or a Role has no namespace
        """
        kind = manifest.get("kind")
        if kind not in ("Role", "ClusterRole"):
            raise ValueError(f"expected Role or ClusterRole manifest, got {kind!r}")

        metadata = manifest.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            raise ValueError("role manifest has no metadata.name")

        namespace = metadata.get("namespace") if kind == "Role" else None
        if kind == "Role" and not namespace:
            raise ValueError(f"Role {name} has no metadata.namespace")

        rules = tuple(
            PolicyRule(
                api_groups=tuple(rule.get("apiGroups") or ("",)),
                resources=tuple(rule.get("resources") or ()),
                verbs=tuple(rule.get("verbs") or ()),
            )
            for rule in manifest.get("rules") or []
        )
        return cls(name=name, namespace=namespace, rules=rules)


@dataclass(frozen=True)
class RoleBinding:
    """Binding of one or more subjects to exactly one role."""

    name: str
    role: RoleDefinition
    subjects: tuple[str, ...]
    resource_version: str | None = None


@dataclass(frozen=True)
class RevocationRecord:
    """Append-only entry of the CA-wide revocation list."""

    serial_number: str
    revoked_at: datetime
    reason: str = "cessation_of_operation"
    identity_name: str | None = None


@dataclass
class BootstrapResult:
    """Result from CA bootstrap operation."""

    key_path: Path
    cert_path: Path
    serial: str
    fingerprint: str


@dataclass
class OnboardResult:
    """Artifacts produced by a completed onboarding."""

    identity: Identity
    role: RoleDefinition
    certificate: SignedCertificate
    bundle: AccessBundle
    binding_state: BindingState


@dataclass
class OffboardResult:
    """Outcome of an offboarding; ``was_bound`` is False for a no-op unbind."""

    identity: Identity
    role: RoleDefinition
    was_bound: bool
    revocations: list[RevocationRecord] = field(default_factory=list)
    rotated_ca: CAKeyMaterial | None = None
    identities_to_reissue: list[str] = field(default_factory=list)
    crl: x509.CertificateRevocationList | None = None
    invalidated_serials: list[str] = field(default_factory=list)
    invalidated_at: datetime | None = None


@dataclass
class ReissueResult:
    """New credentials plus the records superseding the previous ones."""

    certificate: SignedCertificate
    bundle: AccessBundle
    superseded: list[RevocationRecord] = field(default_factory=list)


@dataclass
class CARotationResult:
    """New CA material and the identities whose bundles must be re-issued."""

    new_ca: CAKeyMaterial
    previous_fingerprint: str
    identities_to_reissue: list[str] = field(default_factory=list)
