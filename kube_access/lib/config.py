"""Configuration dataclasses for credential lifecycle operations."""

import os
from dataclasses import dataclass, field
from enum import StrEnum

from cryptography import x509
from cryptography.x509 import oid


class RevocationStrategy(StrEnum):
    """How offboarding invalidates a still-valid client certificate."""

    CRL = "crl"
    ROTATE_CA = "rotate-ca"


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient cluster and ledger errors."""

    max_attempts: int = 5
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0


@dataclass
class AccessConfig:
    """Credential lifecycle configuration with no cluster or AWS dependencies."""

    key_algorithm: str = "rsa"
    key_size: int = 4096
    min_rsa_key_size: int = 2048
    ec_curve: str = "secp384r1"
    client_validity_days: int = 30
    recommended_max_validity_days: int = 90
    ca_validity_years: int = 10
    ca_organization: str = "kube-access"
    forbidden_groups: tuple[str, ...] = ("system:masters",)
    revocation_strategy: RevocationStrategy = RevocationStrategy.CRL
    crl_validity_days: int = 7
    api_timeout_seconds: float = 10.0
    list_page_size: int = 100
    project_name: str = "kube-access"
    region: str = "eu-west-2"
    ledger_table: str = "kube-access-issuance-ledger"
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls) -> "AccessConfig":
        """Build config from KUBE_ACCESS_* environment variables over defaults."""
        config = cls()
        env = os.environ

        if "KUBE_ACCESS_KEY_ALGORITHM" in env:
            config.key_algorithm = env["KUBE_ACCESS_KEY_ALGORITHM"].lower()
        if "KUBE_ACCESS_KEY_SIZE" in env:
            config.key_size = int(env["KUBE_ACCESS_KEY_SIZE"])
        if "KUBE_ACCESS_VALIDITY_DAYS" in env:
            config.client_validity_days = int(env["KUBE_ACCESS_VALIDITY_DAYS"])
        if "KUBE_ACCESS_REVOCATION_STRATEGY" in env:
            config.revocation_strategy = RevocationStrategy(env["KUBE_ACCESS_REVOCATION_STRATEGY"])
        if "KUBE_ACCESS_API_TIMEOUT" in env:
            config.api_timeout_seconds = float(env["KUBE_ACCESS_API_TIMEOUT"])
        if "KUBE_ACCESS_PROJECT_NAME" in env:
            config.project_name = env["KUBE_ACCESS_PROJECT_NAME"]
        if "KUBE_ACCESS_LEDGER_TABLE" in env:
            config.ledger_table = env["KUBE_ACCESS_LEDGER_TABLE"]
        if "AWS_REGION" in env:
            config.region = env["AWS_REGION"]

        return config


@dataclass
class DistinguishedName:
    """X.509 Subject Distinguished Name for CA certificates."""

    organization: str
    common_name: str

    def to_x509_name(self) -> x509.Name:
        """Convert to cryptography x509.Name for certificate generation."""
        return x509.Name(
            [
                x509.NameAttribute(oid.NameOID.ORGANIZATION_NAME, self.organization),
                x509.NameAttribute(oid.NameOID.COMMON_NAME, self.common_name),
            ]
        )
