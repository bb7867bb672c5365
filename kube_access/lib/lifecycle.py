"""Onboarding, offboarding and re-issue workflows.

Steps run in a fixed order and are never rolled back. A failing step is
reported as a LifecycleStepError naming the step and the steps already
completed, so an operator can re-run the workflow.
"""

import functools
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from cryptography import x509

from .config import AccessConfig, RevocationStrategy
from .errors import (
    STEP_BUNDLE_ASSEMBLY,
    STEP_BUNDLE_INVALIDATION,
    STEP_CERTIFICATE_REQUEST,
    STEP_CERTIFICATE_SIGNING,
    STEP_KEY_GENERATION,
    STEP_REVOCATION,
    STEP_ROLE_BINDING,
    STEP_ROLE_UNBINDING,
    AccessError,
    CAUnavailable,
    LifecycleStepError,
)
from .key_generator import KeyMaterialGenerator
from .kubeconfig import CredentialBundleWriter
from .ledger import IssuanceLedger
from .logging_config import LOGGER
from .models import (
    AccessBundle,
    BindingState,
    CAKeyMaterial,
    ClusterEndpoint,
    Identity,
    OffboardResult,
    OnboardResult,
    ReissueResult,
    RoleDefinition,
    SignedCertificate,
)
from .rbac import RBACReconciler
from .retry import call_with_retry
from .signer import CertificateAuthoritySigner

T = TypeVar("T")

CRLPublisher = Callable[[x509.CertificateRevocationList], Any]


class _StepRunner:
    """Runs workflow steps and remembers which ones completed."""

    def __init__(self, workflow: str, identity: Identity) -> None:
        self.workflow = workflow
        self.identity = identity
        self.completed: list[str] = []
        self.retry_safe = True
        self.partial_result: Any = None

    def run(self, step: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            result = fn(*args, **kwargs)
        except AccessError as e:
            LOGGER.error(
                "%s of %s failed at %s: %s",
                self.workflow,
                self.identity.name,
                step,
                e.message,
                extra={"step": step, "identity": self.identity.name},
            )
            raise LifecycleStepError(
                f"{self.workflow} of {self.identity.name} failed: {e.message}",
                step=step,
                cause=e,
                completed_steps=tuple(self.completed),
                retry_safe=self.retry_safe,
                partial_result=self.partial_result,
            ) from e

        self.completed.append(step)
        return result


class AccessLifecycleOrchestrator:
    """Coordinates key generation, signing, bundling and RBAC for one cluster."""

    def __init__(
        self,
        key_generator: KeyMaterialGenerator,
        signer: CertificateAuthoritySigner,
        bundle_writer: CredentialBundleWriter,
        reconciler: RBACReconciler,
        config: AccessConfig,
        crl_publisher: CRLPublisher | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            key_generator: Client key and CSR generator
            signer: CA signer owning the issuance ledger
            bundle_writer: Kubeconfig bundle assembler
            reconciler: RBAC reconciler for the target cluster
            config: Access configuration (revocation strategy, validity)
            crl_publisher: Called with each CRL rendered during offboarding
        """
        self.key_generator = key_generator
        self.signer = signer
        self.bundle_writer = bundle_writer
        self.reconciler = reconciler
        self.config = config
        self.crl_publisher = crl_publisher

    @classmethod
    def from_config(
        cls,
        config: AccessConfig,
        ledger: IssuanceLedger,
        rbac_api: Any,
        crl_publisher: CRLPublisher | None = None,
    ) -> "AccessLifecycleOrchestrator":
        """Wire the default components around one ledger and RBAC API."""
        return cls(
            key_generator=KeyMaterialGenerator(config),
            signer=CertificateAuthoritySigner(ledger, config),
            bundle_writer=CredentialBundleWriter(config),
            reconciler=RBACReconciler(rbac_api, config),
            config=config,
            crl_publisher=crl_publisher,
        )

    def _issue_credentials(
        self,
        runner: _StepRunner,
        identity: Identity,
        cluster: ClusterEndpoint,
        ca: CAKeyMaterial,
        validity_days: int | None,
    ) -> tuple[SignedCertificate, AccessBundle]:
        key_pair = runner.run(STEP_KEY_GENERATION, self.key_generator.generate_key_pair)
        csr = runner.run(STEP_CERTIFICATE_REQUEST, self.key_generator.create_csr, identity, key_pair)
        certificate = runner.run(STEP_CERTIFICATE_SIGNING, self.signer.sign, csr, ca, validity_days)
        bundle = runner.run(
            STEP_BUNDLE_ASSEMBLY,
            self.bundle_writer.assemble_bundle,
            cluster,
            certificate,
            key_pair,
            identity,
        )
        return certificate, bundle

    def onboard(
        self,
        identity: Identity,
        role: RoleDefinition,
        cluster: ClusterEndpoint,
        ca: CAKeyMaterial,
        validity_days: int | None = None,
    ) -> OnboardResult:
        """Issue credentials for ``identity`` and grant it ``role``.

        Args:
            identity: User to onboard
            role: Role to bind; applied to the cluster first if it declares rules
            cluster: API server endpoint written into the bundle
            ca: Cluster CA key material
            validity_days: Certificate lifetime, defaults to client_validity_days

        Returns:
            OnboardResult with the certificate and bundle to hand to the user

        Raises:
            LifecycleStepError: If any step fails; completed steps are left in place
        """
        LOGGER.info(
            "Onboarding %s with %s",
            identity.name,
            role,
            extra={"identity": identity.name},
        )
        runner = _StepRunner("onboarding", identity)
        certificate, bundle = self._issue_credentials(runner, identity, cluster, ca, validity_days)
        runner.run(STEP_ROLE_BINDING, self._grant, identity, role)

        LOGGER.info(
            "Onboarded %s, certificate %s expires %s",
            identity.name,
            certificate.serial_hex,
            certificate.not_after.isoformat(),
            extra={"identity": identity.name},
        )
        return OnboardResult(
            identity=identity,
            role=role,
            certificate=certificate,
            bundle=bundle,
            binding_state=BindingState.BOUND,
        )

    def _grant(self, identity: Identity, role: RoleDefinition) -> None:
        if role.rules:
            self.reconciler.apply_role(role)
        self.reconciler.bind(identity, role)

    def offboard(
        self,
        identity: Identity,
        role: RoleDefinition,
        revoke: bool = True,
        ca: CAKeyMaterial | None = None,
        bundle: AccessBundle | None = None,
    ) -> OffboardResult:
        """Remove ``identity``'s access to ``role``.

        The binding is removed first and must succeed before any certificate
        is revoked. Offboarding an identity that was never bound is a no-op.

        Certificates are not tied to a role: with ``revoke`` every active
        certificate of the identity is revoked, which also cuts it off from
        any other role it is still bound to. Pass ``revoke=False`` to remove
        a single role and keep the credentials.

        With the rotate-ca strategy a failure after rotation carries the
        OffboardResult holding the new CA as ``partial_result`` of the
        raised LifecycleStepError.

        Args:
            identity: User to offboard
            role: Role to unbind
            revoke: Revoke all of the identity's active certificates
            ca: CA key material; needed to render a CRL or rotate the CA
            bundle: Delivered bundle to mark invalid

        Returns:
            OffboardResult describing what changed

        Raises:
            LifecycleStepError: If a step fails
        """
        LOGGER.info("Offboarding %s from %s", identity.name, role, extra={"identity": identity.name})
        runner = _StepRunner("offboarding", identity)

        was_bound = runner.run(STEP_ROLE_UNBINDING, self.reconciler.unbind, identity, role)
        result = OffboardResult(identity=identity, role=role, was_bound=was_bound)
        runner.partial_result = result

        if revoke:
            runner.run(STEP_REVOCATION, self._revoke, runner, identity, ca, result)

        invalidated_at = datetime.now(UTC)
        result.invalidated_serials = runner.run(
            STEP_BUNDLE_INVALIDATION,
            self._invalidate,
            identity,
            bundle,
            invalidated_at,
        )
        result.invalidated_at = invalidated_at

        LOGGER.info(
            "Offboarded %s (was bound: %s, revoked: %d)",
            identity.name,
            was_bound,
            len(result.revocations),
            extra={"identity": identity.name},
        )
        return result

    def _revoke(
        self,
        runner: _StepRunner,
        identity: Identity,
        ca: CAKeyMaterial | None,
        result: OffboardResult,
    ) -> None:
        if self.config.revocation_strategy == RevocationStrategy.ROTATE_CA:
            if ca is None:
                raise CAUnavailable("CA rotation requires the current CA key material", step=STEP_REVOCATION)
            if not self._active_certificates(identity):
                return

            rotation = self.signer.rotate_ca(ca)
            result.rotated_ca = rotation.new_ca
            result.identities_to_reissue = [name for name in rotation.identities_to_reissue if name != identity.name]
            # the new CA exists only in this result until the caller stores it
            runner.retry_safe = False
            result.revocations = self.signer.revoke_identity(identity, reason="superseded")
            return

        result.revocations = self.signer.revoke_identity(identity)
        if ca is None:
            return

        result.crl = self.signer.build_crl(ca)
        if self.crl_publisher is not None:
            self.crl_publisher(result.crl)

    def _active_certificates(self, identity: Identity) -> list[str]:
        active = call_with_retry(
            functools.partial(self.signer.ledger.active_certificates, identity.name),
            step=STEP_REVOCATION,
            policy=self.config.retry,
        )
        return [item["serialNumber"] for item in active]

    def _invalidate(self, identity: Identity, bundle: AccessBundle | None, invalidated_at: datetime) -> list[str]:
        serials = call_with_retry(
            functools.partial(self.signer.ledger.invalidate_bundles, identity.name, invalidated_at),
            step=STEP_BUNDLE_INVALIDATION,
            policy=self.config.retry,
        )
        if bundle is not None:
            self.bundle_writer.invalidate(bundle, reason="offboarded")
        return serials

    def reissue(
        self,
        identity: Identity,
        cluster: ClusterEndpoint,
        ca: CAKeyMaterial,
        validity_days: int | None = None,
    ) -> ReissueResult:
        """Issue fresh credentials and supersede the identity's previous certificates.

        RBAC is untouched: the username and group are unchanged, so existing
        bindings keep applying to the new certificate.
        """
        runner = _StepRunner("re-issue", identity)
        previous = self._active_certificates(identity)
        certificate, bundle = self._issue_credentials(runner, identity, cluster, ca, validity_days)

        superseded = runner.run(
            STEP_REVOCATION,
            lambda: [self.signer.revoke(serial, reason="superseded") for serial in previous],
        )
        LOGGER.info(
            "Re-issued %s as %s, superseded %d certificates",
            identity.name,
            certificate.serial_hex,
            len(superseded),
            extra={"identity": identity.name},
        )
        return ReissueResult(certificate=certificate, bundle=bundle, superseded=superseded)
