from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

CA_ORGANIZATION = "ClusterReconciler"


@dataclass(frozen=True)
class CertificateWindow:
    not_before: datetime
    not_after: datetime
    fingerprint: str

    def days_to_expiry(self, now: Optional[datetime] = None) -> int:
        remaining = self.not_after - (now or _utcnow())
        return math.floor(remaining.total_seconds() / 86400)

    def expired(self, now: Optional[datetime] = None) -> bool:
        return self.not_after <= (now or _utcnow())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _cert_bounds(cert: x509.Certificate) -> tuple[datetime, datetime]:
    not_before = getattr(cert, "not_valid_before_utc", None)
    not_after = getattr(cert, "not_valid_after_utc", None)
    if not_before is None or not_after is None:
        return _as_utc(cert.not_valid_before), _as_utc(cert.not_valid_after)
    return not_before, not_after


def _key_pem(key: ec.EllipticCurvePrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def _load_signing_key(key_pem: str) -> ec.EllipticCurvePrivateKey | rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(key_pem.encode("utf-8"), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey | rsa.RSAPrivateKey):
        raise ValueError("Unsupported CA private key type.")
    return key


def load_certificate(cert_pem: str) -> x509.Certificate:
    return x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))


def _root_builder(
    subject: x509.Name,
    public_key: ec.EllipticCurvePublicKey | rsa.RSAPublicKey,
    *,
    validity_days: int,
    now: datetime,
) -> x509.CertificateBuilder:
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
    )


def generate_root(
    *,
    common_name: str,
    validity_days: int,
    now: Optional[datetime] = None,
) -> tuple[str, str]:
    """Create a fresh keypair and a self-signed CA certificate for it.

    Returns ``(key_pem, cert_pem)``.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, CA_ORGANIZATION),
        ]
    )
    cert = _root_builder(
        subject,
        key.public_key(),
        validity_days=validity_days,
        now=now or _utcnow(),
    ).sign(private_key=key, algorithm=hashes.SHA256())
    return _key_pem(key), _cert_pem(cert)


def renew_root(
    *,
    key_pem: str,
    previous_cert_pem: str,
    validity_days: int,
    now: Optional[datetime] = None,
) -> str:
    """Re-sign the CA certificate under its existing key.

    Subject and public key are kept, so every trust store that already holds the
    previous certificate keeps validating leaves signed by this key.
    """
    key = _load_signing_key(key_pem)
    previous = load_certificate(previous_cert_pem)
    cert = _root_builder(
        previous.subject,
        key.public_key(),
        validity_days=validity_days,
        now=now or _utcnow(),
    ).sign(private_key=key, algorithm=hashes.SHA256())
    return _cert_pem(cert)


def sign_leaf(
    *,
    ca_key_pem: str,
    ca_cert_pem: str,
    common_name: str,
    validity_days: int,
    dns_names: Sequence[str] = (),
    now: Optional[datetime] = None,
) -> tuple[str, str]:
    """Issue a client/server leaf certificate signed by the given CA.

    Returns ``(key_pem, cert_pem)``.
    """
    ca_key = _load_signing_key(ca_key_pem)
    ca_cert = load_certificate(ca_cert_pem)
    key = ec.generate_private_key(ec.SECP256R1())
    current = now or _utcnow()
    builder = (
        x509.CertificateBuilder()
        .subject_name(
            x509.Name(
                [
                    x509.NameAttribute(NameOID.COMMON_NAME, common_name),
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, CA_ORGANIZATION),
                ]
            )
        )
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(current - timedelta(minutes=1))
        .not_valid_after(current + timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH]
            ),
            critical=False,
        )
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False,
        )
    cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
    return _key_pem(key), _cert_pem(cert)


def certificate_window(cert_pem: str) -> CertificateWindow:
    cert = load_certificate(cert_pem)
    not_before, not_after = _cert_bounds(cert)
    return CertificateWindow(
        not_before=not_before,
        not_after=not_after,
        fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
    )


def issued_by(cert_pem: str, ca_cert_pem: str) -> bool:
    cert = load_certificate(cert_pem)
    ca_cert = load_certificate(ca_cert_pem)
    try:
        cert.verify_directly_issued_by(ca_cert)
    except (InvalidSignature, ValueError, TypeError):
        return False
    return True


def key_matches_certificate(key_pem: str, cert_pem: str) -> bool:
    key = _load_signing_key(key_pem)
    cert = load_certificate(cert_pem)
    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    encoding = serialization.Encoding.DER
    return key.public_key().public_bytes(encoding, public_format) == cert.public_key().public_bytes(
        encoding, public_format
    )
