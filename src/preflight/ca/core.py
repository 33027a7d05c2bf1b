"""
CA 使用层的核心逻辑实现。
包括从受密码保护的 PKCS#12 密钥库加载 CA 材料、使用 CA 对 CSR 签名、校验签发关系等。
CA 的生成不在此处，密钥库由外部预置。
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ed448, ed25519
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID
from loguru import logger

from src.preflight.ca.schemas import CAKeyMaterial
from src.preflight.files import atomic_write_bytes

CA_ALIAS = b"ca"
ROOT_ALIAS = b"root"


class CAKeystoreError(RuntimeError):
    """CA 密钥库不可读、已损坏或无法用给定密码解锁。"""


class CAKeystore:
    """
    受密码保护的 CA 密钥库（PKCS#12）。
    CA 私钥与证书以 `ca` 为别名保存，根证书以 `root` 为别名保存。
    """

    def __init__(self, path: Path):
        self.path = path

    def load(self, password: str) -> CAKeyMaterial | None:
        """
        加载 CA 材料，每次调用都重新读取文件。
        :param password: 密钥库密码。
        :return: CA 材料；密钥库文件不存在时返回 None。
        :raises CAKeystoreError: 文件不可读、格式错误或密码错误时。
        """
        if not self.path.exists():
            return None
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise CAKeystoreError(f"无法读取 CA 密钥库 {self.path}: {e}") from e

        try:
            bundle = pkcs12.load_pkcs12(data, password.encode("utf-8"))
        except ValueError as e:
            raise CAKeystoreError(f"无法解锁 CA 密钥库 {self.path}（格式错误或密码错误）") from e

        if bundle.key is None or bundle.cert is None:
            raise CAKeystoreError(f"CA 密钥库 {self.path} 中缺少 CA 私钥或证书")

        ca_certificate = bundle.cert.certificate
        root_certificate = _find_root(bundle, ca_certificate)
        return CAKeyMaterial(
            private_key=bundle.key,
            ca_certificate=ca_certificate,
            root_certificate=root_certificate,
        )


def _find_root(bundle: pkcs12.PKCS12KeyAndCertificates, ca_certificate: x509.Certificate) -> x509.Certificate:
    """按别名查找根证书；没有 `root` 别名时取最后一个附加证书，自签 CA 则根即自身。"""
    for entry in bundle.additional_certs:
        if entry.friendly_name == ROOT_ALIAS:
            return entry.certificate
    if bundle.additional_certs:
        return bundle.additional_certs[-1].certificate
    return ca_certificate


def store_ca_keystore(
    path: Path,
    private_key: CertificateIssuerPrivateKeyTypes,
    ca_certificate: x509.Certificate,
    root_certificate: x509.Certificate,
    password: str,
) -> None:
    """
    将已有的 CA 材料写入受密码保护的密钥库。
    :raises ValueError: 密码为空时。
    :raises OSError: 无法写入时。
    """
    if not password:
        raise ValueError("CA 密钥库密码不能为空")
    cas = []
    if root_certificate != ca_certificate:
        cas.append(pkcs12.PKCS12Certificate(root_certificate, ROOT_ALIAS))
    data = pkcs12.serialize_key_and_certificates(
        name=CA_ALIAS,
        key=private_key,
        cert=ca_certificate,
        cas=cas or None,
        encryption_algorithm=BestAvailableEncryption(password.encode("utf-8")),
    )
    atomic_write_bytes(path, data, mode=0o600)


def _signature_algorithm(private_key: CertificateIssuerPrivateKeyTypes):
    # Ed25519/Ed448 签名不接受独立的摘要算法
    if isinstance(private_key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return None
    return hashes.SHA256()


def load_csr(csr_bytes: bytes) -> x509.CertificateSigningRequest:
    """
    解析 PEM（或 DER）格式的 CSR，并校验其自签名。
    :raises ValueError: CSR 无效时。
    """
    try:
        if b"-----BEGIN" in csr_bytes:
            csr = x509.load_pem_x509_csr(csr_bytes)
        else:
            csr = x509.load_der_x509_csr(csr_bytes)
    except ValueError as e:
        raise ValueError(f"无效的 CSR 格式: {e}") from e
    if not csr.is_signature_valid:
        raise ValueError("CSR 签名校验失败")
    return csr


def sign_csr(
    ca_private_key: CertificateIssuerPrivateKeyTypes,
    ca_certificate: x509.Certificate,
    csr_bytes: bytes,
    validity: timedelta,
) -> x509.Certificate:
    """
    使用 CA 私钥对 CSR 签名，返回叶子证书。
    :param ca_private_key: CA 私钥。
    :param ca_certificate: CA 证书（作为签发者）。
    :param csr_bytes: PEM 或 DER 格式的 CSR。
    :param validity: 证书有效期。
    :return: 签发的叶子证书。
    :raises ValueError: CSR 无效或有效期非正时。
    """
    if validity <= timedelta(0):
        raise ValueError(f"证书有效期必须为正数: {validity}")
    csr = load_csr(csr_bytes)

    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(ca_certificate.subject)
        .public_key(csr.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + validity)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                key_cert_sign=False,
                crl_sign=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(csr.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_certificate.public_key()),
            critical=False,
        )
    )

    # 复制 CSR 中请求的扩展（如 SAN），跳过由 CA 决定的扩展
    for ext in csr.extensions:
        if isinstance(
            ext.value,
            (
                x509.BasicConstraints,
                x509.KeyUsage,
                x509.ExtendedKeyUsage,
                x509.SubjectKeyIdentifier,
                x509.AuthorityKeyIdentifier,
            ),
        ):
            continue
        builder = builder.add_extension(ext.value, critical=ext.critical)

    cert = builder.sign(private_key=ca_private_key, algorithm=_signature_algorithm(ca_private_key))
    logger.debug(
        f"已签发证书: subject={cert.subject.rfc4514_string()}, serial=0x{cert.serial_number:x}, "
        f"not_after={cert.not_valid_after_utc}"
    )
    return cert


def verify_issued_by(certificate: x509.Certificate, issuer: x509.Certificate) -> None:
    """
    校验证书确由给定签发者签发（签发者名称与签名均匹配）。
    :raises ValueError: 校验失败时。
    """
    try:
        certificate.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature) as e:
        raise ValueError(f"证书未由 CA {issuer.subject.rfc4514_string()} 签发: {e}") from e
