from __future__ import annotations

from datetime import timedelta

from conftest import NOW

from reconciler import identity


def test_generate_root_is_self_signed_ca():
    key_pem, cert_pem = identity.generate_root(common_name="c-cluster-ca", validity_days=365, now=NOW)

    assert identity.key_matches_certificate(key_pem, cert_pem)
    assert identity.issued_by(cert_pem, cert_pem)
    window = identity.certificate_window(cert_pem)
    assert window.days_to_expiry(NOW) == 365
    assert not window.expired(NOW)


def test_renew_root_keeps_key_and_subject():
    key_pem, cert_pem = identity.generate_root(common_name="c-cluster-ca", validity_days=10, now=NOW)
    renewed = identity.renew_root(
        key_pem=key_pem,
        previous_cert_pem=cert_pem,
        validity_days=365,
        now=NOW + timedelta(days=5),
    )

    assert renewed != cert_pem
    assert identity.key_matches_certificate(key_pem, renewed)
    assert identity.load_certificate(renewed).subject == identity.load_certificate(cert_pem).subject
    assert identity.certificate_window(renewed).days_to_expiry(NOW) == 370


def test_leaf_validates_against_old_root_after_renewal():
    key_pem, cert_pem = identity.generate_root(common_name="c-cluster-ca", validity_days=10, now=NOW)
    renewed = identity.renew_root(key_pem=key_pem, previous_cert_pem=cert_pem, validity_days=365, now=NOW)
    _, leaf = identity.sign_leaf(
        ca_key_pem=key_pem,
        ca_cert_pem=renewed,
        common_name="worker",
        validity_days=30,
        now=NOW,
    )

    assert identity.issued_by(leaf, renewed)
    assert identity.issued_by(leaf, cert_pem)


def test_leaf_from_other_ca_is_rejected():
    key_pem, cert_pem = identity.generate_root(common_name="a", validity_days=30, now=NOW)
    _, other_cert = identity.generate_root(common_name="b", validity_days=30, now=NOW)
    _, leaf = identity.sign_leaf(
        ca_key_pem=key_pem,
        ca_cert_pem=cert_pem,
        common_name="worker",
        validity_days=30,
        dns_names=("worker.local",),
        now=NOW,
    )

    assert not identity.issued_by(leaf, other_cert)


def test_window_expiry_is_floored_to_whole_days():
    _, cert_pem = identity.generate_root(common_name="c", validity_days=2, now=NOW)
    window = identity.certificate_window(cert_pem)

    assert window.days_to_expiry(NOW + timedelta(hours=13)) == 1
    assert window.expired(NOW + timedelta(days=2))
    assert window.days_to_expiry(NOW + timedelta(days=3)) < 0
