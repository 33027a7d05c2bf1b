"""
信任库（truststore）构建工具。

将一组「别名 -> 受信任证书」写入受密码保护的 PKCS#12 容器，别名原样保存为 friendlyName，
可被 openssl / keytool 等通用 TLS 工具读取。

公开接口：
- build_truststore: 构建并以原子方式写出信任库
- load_truststore: 读取信任库，返回别名到证书的映射
- export_ca_truststore: 将集群 CA 的证书导出为信任库
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Mapping

from cryptography import x509
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from loguru import logger

from src.preflight.ca.core import CA_ALIAS, ROOT_ALIAS
from src.preflight.ca.schemas import CAKeyMaterial
from src.preflight.files import atomic_write_bytes


class TruststoreFormatError(ValueError):
    """证书格式错误或信任库容器无法初始化/解锁。"""


def build_truststore(
    certificates_by_alias: Mapping[str, x509.Certificate],
    password: str,
    destination: Path,
) -> Path:
    """
    构建受密码保护的信任库。
    别名由调用方保证唯一，Mapping 本身不会出现重复键。
    :param certificates_by_alias: 非空的别名到证书映射。
    :param password: 保护与解锁信任库的密码。
    :param destination: 输出路径；先写临时文件，成功后再替换。
    :return: 写出的信任库路径。
    :raises TruststoreFormatError: 映射为空、密码为空、证书无效或容器无法序列化时。
    :raises OSError: 目标路径无法写入时。
    """
    if not certificates_by_alias:
        raise TruststoreFormatError("信任库至少需要一个证书")
    if not password:
        raise TruststoreFormatError("信任库密码不能为空")

    entries = []
    for alias, certificate in certificates_by_alias.items():
        if not isinstance(certificate, x509.Certificate):
            raise TruststoreFormatError(f"别名 {alias!r} 对应的不是 X.509 证书")
        entries.append(pkcs12.PKCS12Certificate(certificate, alias.encode("utf-8")))

    try:
        data = pkcs12.serialize_key_and_certificates(
            name=None,
            key=None,
            cert=None,
            cas=entries,
            encryption_algorithm=BestAvailableEncryption(password.encode("utf-8")),
        )
    except (TypeError, ValueError) as e:
        raise TruststoreFormatError(f"无法生成信任库: {e}") from e

    atomic_write_bytes(destination, data, mode=0o600)
    logger.info(f"信任库已写入: {destination}（{len(entries)} 个证书）")
    return destination


def load_truststore(source: Path, password: str) -> Dict[str, x509.Certificate]:
    """
    读取信任库。
    :raises TruststoreFormatError: 格式错误或密码错误时。
    :raises OSError: 文件无法读取时。
    """
    data = source.read_bytes()
    try:
        bundle = pkcs12.load_pkcs12(data, password.encode("utf-8"))
    except ValueError as e:
        raise TruststoreFormatError(f"无法解锁信任库 {source}（格式错误或密码错误）") from e

    result: Dict[str, x509.Certificate] = {}
    for entry in bundle.additional_certs:
        alias = entry.friendly_name.decode("utf-8") if entry.friendly_name else ""
        result[alias] = entry.certificate
    return result


def export_ca_truststore(material: CAKeyMaterial, password: str, destination: Path) -> Path:
    """将 CA 证书（别名 `ca`）与根证书（别名 `root`）导出为信任库。"""
    certificates = {CA_ALIAS.decode(): material.ca_certificate}
    if material.root_certificate != material.ca_certificate:
        certificates[ROOT_ALIAS.decode()] = material.root_certificate
    return build_truststore(certificates, password, destination)
