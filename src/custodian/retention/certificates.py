"""Secure deletion certificate issuance and verification.

A certificate is the proof that a batch of lifecycle records was securely
erased. It embeds the SHA-256 hash of the erasure manifest and an
HMAC-SHA256 signature over its own canonical payload, so both the manifest
and the certificate fields can be checked for tampering later.

The issuer is the only writer of SecureDeletionCertificate rows. It adds
the row to the caller's session without committing: the caller commits it
together with the securely_erased transitions, or rolls both back.
"""

import hashlib
import hmac
import json
import re
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from custodian.config.settings import Settings
from custodian.core.exceptions import CertificateIssuanceError
from custodian.db.models.certificate import SecureDeletionCertificate
from custodian.db.repositories.certificate import CertificateRepository
from custodian.observability.metrics import record_certificate_issued
from custodian.retention.types import ErasureResult, LegalBasis, RequestOrigin

logger = structlog.get_logger()

VERIFICATION_METHOD = "sha256_hash_verification"
_NUMBER_ATTEMPTS = 5


def _hash_manifest_document(manifest: dict[str, Any]) -> str:
    canonical = json.dumps(manifest, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CertificateIssuer:
    """Issues signed Secure Deletion Certificates."""

    def __init__(
        self,
        signing_key: str,
        *,
        validity: timedelta = timedelta(days=2555),
        regulatory_requirement: str = "GDPR Article 5(1)(e)",
        issuer_id: str | None = None,
    ):
        if not signing_key:
            raise ValueError("signing_key must not be empty")
        self._signing_key = signing_key.encode("utf-8")
        self.validity = validity
        self.regulatory_requirement = regulatory_requirement
        self.issuer_id = issuer_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "CertificateIssuer":
        return cls(
            settings.certificate_signing_key.get_secret_value(),
            validity=timedelta(days=settings.certificate_validity_days),
            regulatory_requirement=settings.default_regulatory_requirement,
            issuer_id=settings.worker_id,
        )

    @staticmethod
    def generate_number(organisation_id: str) -> str:
        """Certificate number in the form ``SDEL-<ORG8>-<RANDOM8>``."""
        org = re.sub(r"[^A-Za-z0-9]", "", organisation_id).upper()[:8] or "ORG"
        return f"SDEL-{org}-{secrets.token_hex(4).upper()}"

    @staticmethod
    def signing_payload(certificate: SecureDeletionCertificate) -> str:
        """Canonical text covered by the digital signature."""
        payload = {
            "certificate_number": certificate.certificate_number,
            "organisation_id": certificate.organisation_id,
            "user_id": certificate.user_id,
            "data_types": sorted(certificate.data_types),
            "record_count": certificate.record_count,
            "record_ids": sorted(certificate.record_ids),
            "secure_erase_method": certificate.secure_erase_method,
            "deletion_started_at": certificate.deletion_started_at.astimezone(UTC).isoformat(),
            "deletion_completed_at": certificate.deletion_completed_at.astimezone(UTC).isoformat(),
            "verification_hash": certificate.verification_hash,
            "verification_method": certificate.verification_method,
            "legal_basis": certificate.legal_basis,
            "regulatory_requirement": certificate.regulatory_requirement,
            "request_origin": certificate.request_origin,
            "witness_name": certificate.witness_name,
            "valid_from": certificate.valid_from.astimezone(UTC).isoformat(),
            "valid_until": certificate.valid_until.astimezone(UTC).isoformat(),
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))

    def sign(self, certificate: SecureDeletionCertificate) -> str:
        return hmac.new(
            self._signing_key,
            self.signing_payload(certificate).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def issue(
        self,
        session: AsyncSession,
        result: ErasureResult,
        legal_basis: LegalBasis | str,
        request_origin: RequestOrigin | str = RequestOrigin.RETENTION_POLICY,
        *,
        issued_at: datetime,
        witness_name: str | None = None,
        witness_statement: str | None = None,
        regulatory_requirement: str | None = None,
    ) -> SecureDeletionCertificate:
        """Create the certificate for a completed erase.

        Args:
            session: Unit of work that also marks the records erased.
            result: Manifest and hash from the secure erase executor.
            legal_basis: Lawful basis recorded on the erased records.
            request_origin: What requested the deletion.
            issued_at: Start of the validity window.
            witness_name: Optional witness (physical destruction).
            witness_statement: Optional witness statement.
            regulatory_requirement: Overrides the issuer default.

        Returns:
            The flushed, uncommitted certificate.

        Raises:
            CertificateIssuanceError: If the certificate could not be written.
        """
        manifest = result.manifest
        manifest_document = manifest.model_dump(mode="json")
        if _hash_manifest_document(manifest_document) != result.manifest_hash:
            raise CertificateIssuanceError(
                "Manifest hash does not match manifest contents",
                details={"manifest_hash": result.manifest_hash},
            )

        repo = CertificateRepository(session)
        try:
            number = await self._unique_number(repo, manifest.organisation_id)
            user_ids = result.user_ids
            certificate = SecureDeletionCertificate(
                certificate_number=number,
                organisation_id=manifest.organisation_id,
                user_id=user_ids[0] if len(user_ids) == 1 else None,
                data_types=result.data_types,
                record_count=result.record_count,
                record_ids=[str(r) for r in result.record_ids],
                secure_erase_method=manifest.method.value,
                deletion_started_at=manifest.started_at,
                deletion_completed_at=manifest.completed_at,
                manifest=manifest_document,
                verification_hash=result.manifest_hash,
                verification_method=VERIFICATION_METHOD,
                witness_name=witness_name,
                witness_statement=witness_statement,
                legal_basis=LegalBasis(legal_basis).value,
                regulatory_requirement=regulatory_requirement or self.regulatory_requirement,
                request_origin=RequestOrigin(request_origin).value,
                valid_from=issued_at,
                valid_until=issued_at + self.validity,
                issued_by=self.issuer_id,
                created_at=issued_at,
            )
            certificate.digital_signature = self.sign(certificate)
            session.add(certificate)
            await session.flush()
        except SQLAlchemyError as e:
            raise CertificateIssuanceError(
                f"Failed to store certificate: {e}",
                details={"organisation_id": manifest.organisation_id},
            ) from e

        record_certificate_issued()
        logger.info(
            "certificate_issued",
            certificate_number=certificate.certificate_number,
            organisation_id=certificate.organisation_id,
            record_count=certificate.record_count,
            method=certificate.secure_erase_method,
        )
        return certificate

    async def _unique_number(self, repo: CertificateRepository, organisation_id: str) -> str:
        for _ in range(_NUMBER_ATTEMPTS):
            number = self.generate_number(organisation_id)
            if await repo.get_by_number(number) is None:
                return number
        raise CertificateIssuanceError(
            "Could not allocate a unique certificate number",
            details={"organisation_id": organisation_id},
        )

    def verify(self, certificate: SecureDeletionCertificate) -> bool:
        """Check the manifest hash and the signature of a stored certificate."""
        if _hash_manifest_document(certificate.manifest) != certificate.verification_hash:
            return False
        if certificate.digital_signature is None:
            return False
        return hmac.compare_digest(certificate.digital_signature, self.sign(certificate))
