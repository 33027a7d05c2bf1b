"""
测试共用的 CA 与 CSR 构造工具。
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from src.preflight.ca.schemas import CAKeyMaterial


def _ca_certificate(subject_cn: str, public_key, issuer: x509.Name | None, signing_key) -> x509.Certificate:
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Preflight Test"),
            x509.NameAttribute(NameOID.COMMON_NAME, subject_cn),
        ]
    )
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer or subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=1), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=False,
                key_cert_sign=True,
                crl_sign=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .sign(private_key=signing_key, algorithm=hashes.SHA256())
    )


def build_ca(name: str = "Preflight") -> CAKeyMaterial:
    """生成「根 CA -> 中间 CA」两级结构，中间 CA 用于签发。"""
    root_key = ec.generate_private_key(ec.SECP256R1())
    root_cert = _ca_certificate(f"{name} Root CA", root_key.public_key(), None, root_key)
    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_cert = _ca_certificate(f"{name} CA", ca_key.public_key(), root_cert.subject, root_key)
    return CAKeyMaterial(private_key=ca_key, ca_certificate=ca_cert, root_certificate=root_cert)


def build_csr(common_name: str, dns_names: List[str] | None = None, ip_addresses=None) -> Tuple[ec.EllipticCurvePrivateKey, bytes]:
    """生成 EC 私钥与 PEM 格式的 CSR。"""
    private_key = ec.generate_private_key(ec.SECP256R1())
    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    )
    alt_names: List[x509.GeneralName] = [x509.DNSName(n) for n in dns_names or []]
    alt_names += [x509.IPAddress(ip) for ip in ip_addresses or []]
    if alt_names:
        builder = builder.add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
    csr = builder.sign(private_key, hashes.SHA256())
    return private_key, csr.public_bytes(serialization.Encoding.PEM)


@pytest.fixture
def ca_material() -> CAKeyMaterial:
    return build_ca()


@pytest.fixture
def other_ca_material() -> CAKeyMaterial:
    return build_ca("Foreign")


@pytest.fixture
def make_csr() -> Callable[..., Tuple[ec.EllipticCurvePrivateKey, bytes]]:
    return build_csr
