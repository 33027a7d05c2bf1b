"""
CA 相关的数据模型定义。
"""

from __future__ import annotations

from typing import List

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes
from cryptography.hazmat.primitives.serialization import Encoding
from pydantic import BaseModel, ConfigDict, Field


class CAKeyMaterial(BaseModel):
    """
    从受保护的 CA 密钥库中加载的签发材料。
    私钥不参与 repr，避免被日志意外输出。
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    private_key: CertificateIssuerPrivateKeyTypes = Field(repr=False)
    ca_certificate: x509.Certificate
    root_certificate: x509.Certificate

    @property
    def trust_anchors(self) -> List[x509.Certificate]:
        """CA 证书与根证书（根证书与 CA 证书相同时只返回一份）。"""
        if self.root_certificate == self.ca_certificate:
            return [self.ca_certificate]
        return [self.ca_certificate, self.root_certificate]


class CertificateChain(BaseModel):
    """
    节点证书链：叶子证书在前，随后依次为中间 CA 证书与根证书。
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    leaf: x509.Certificate
    ca_certificates: List[x509.Certificate]

    @property
    def certificates(self) -> List[x509.Certificate]:
        return [self.leaf, *self.ca_certificates]

    def to_pem(self) -> bytes:
        """按链顺序拼接 PEM。"""
        return b"".join(c.public_bytes(Encoding.PEM) for c in self.certificates)

    @classmethod
    def from_pem(cls, data: bytes) -> "CertificateChain":
        """
        从拼接的 PEM 中解析证书链。
        :raises ValueError: 内容不是合法的 PEM 证书序列时。
        """
        certificates = x509.load_pem_x509_certificates(data)
        return cls(leaf=certificates[0], ca_certificates=certificates[1:])
