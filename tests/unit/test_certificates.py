"""Tests for certificate numbering, signing and verification."""

import re
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest

from custodian.db.models import SecureDeletionCertificate
from custodian.retention.certificates import VERIFICATION_METHOD, CertificateIssuer
from custodian.retention.erasure import compute_manifest_hash
from custodian.retention.types import ErasureManifest, ManifestEntry, SecureEraseMethod

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)
SIGNING_KEY = "test-signing-key"


def _certificate(issuer: CertificateIssuer) -> SecureDeletionCertificate:
    manifest = ErasureManifest(
        organisation_id="acme-learning",
        method=SecureEraseMethod.OVERWRITE_MULTIPLE,
        started_at=NOW,
        completed_at=NOW + timedelta(seconds=2),
        entries=[
            ManifestEntry(
                record_id=UUID(int=1),
                user_id="user-1",
                data_type="communications",
                resource_table="email_logs",
                resource_id="email-1",
                action="overwritten_3x_and_deleted",
                erased_at=NOW,
            )
        ],
    )
    certificate = SecureDeletionCertificate(
        certificate_number="SDEL-ACMELEAR-0A1B2C3D",
        organisation_id="acme-learning",
        user_id="user-1",
        data_types=["communications"],
        record_count=1,
        record_ids=[str(UUID(int=1))],
        secure_erase_method="overwrite_multiple",
        deletion_started_at=manifest.started_at,
        deletion_completed_at=manifest.completed_at,
        manifest=manifest.model_dump(mode="json"),
        verification_hash=compute_manifest_hash(manifest),
        verification_method=VERIFICATION_METHOD,
        legal_basis="legitimate_interests",
        regulatory_requirement="GDPR Article 5(1)(e)",
        request_origin="retention_policy",
        valid_from=NOW,
        valid_until=NOW + timedelta(days=2555),
    )
    certificate.digital_signature = issuer.sign(certificate)
    return certificate


class TestCertificateNumber:
    """Tests for certificate number generation."""

    def test_format(self) -> None:
        number = CertificateIssuer.generate_number("acme-learning")

        assert re.fullmatch(r"SDEL-ACMELEAR-[0-9A-F]{8}", number)

    def test_short_organisation(self) -> None:
        assert CertificateIssuer.generate_number("io").startswith("SDEL-IO-")

    def test_organisation_without_alphanumerics(self) -> None:
        assert CertificateIssuer.generate_number("---").startswith("SDEL-ORG-")

    def test_numbers_are_random(self) -> None:
        numbers = {CertificateIssuer.generate_number("acme") for _ in range(20)}

        assert len(numbers) > 1


class TestVerification:
    """Tests for signature and manifest hash verification."""

    def test_valid_certificate_verifies(self) -> None:
        issuer = CertificateIssuer(SIGNING_KEY)

        assert issuer.verify(_certificate(issuer)) is True

    def test_tampered_field_fails(self) -> None:
        issuer = CertificateIssuer(SIGNING_KEY)
        certificate = _certificate(issuer)

        certificate.record_count = 2

        assert issuer.verify(certificate) is False

    def test_tampered_manifest_fails(self) -> None:
        issuer = CertificateIssuer(SIGNING_KEY)
        certificate = _certificate(issuer)

        certificate.manifest = {**certificate.manifest, "organisation_id": "globex-academy"}

        assert issuer.verify(certificate) is False

    def test_wrong_key_fails(self) -> None:
        certificate = _certificate(CertificateIssuer(SIGNING_KEY))

        assert CertificateIssuer("another-key").verify(certificate) is False

    def test_unsigned_certificate_fails(self) -> None:
        issuer = CertificateIssuer(SIGNING_KEY)
        certificate = _certificate(issuer)

        certificate.digital_signature = None

        assert issuer.verify(certificate) is False


def test_empty_signing_key_rejected() -> None:
    with pytest.raises(ValueError):
        CertificateIssuer("")
