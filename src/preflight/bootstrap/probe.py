"""
节点连通性探测。

通过只信任集群 CA 的 HTTPS 客户端访问节点公布的地址：节点若未使用由集群 CA 签发的证书，
TLS 握手即失败，探测结果为不可达。

公开接口：
- CATrustManager: 只信任集群 CA 证书的 TLS 上下文
- ConnectivityProber: 基于 httpx 的连通性探测
"""

from __future__ import annotations

import base64
import ssl
from typing import Generator, Iterable, Set
from urllib.parse import unquote, urlsplit, urlunsplit

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding
from loguru import logger


class CATrustManager:
    """
    只信任显式加入的 CA 证书，不加载系统默认的根证书。
    证书按指纹去重，可在运行期追加，已有客户端的后续连接立即生效。
    """

    def __init__(self, check_hostname: bool = True):
        self._context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        self._context.check_hostname = check_hostname
        self._context.verify_mode = ssl.CERT_REQUIRED
        self._fingerprints: Set[bytes] = set()

    @property
    def context(self) -> ssl.SSLContext:
        return self._context

    def trust(self, certificates: Iterable[x509.Certificate]) -> None:
        for certificate in certificates:
            fingerprint = certificate.fingerprint(hashes.SHA256())
            if fingerprint in self._fingerprints:
                continue
            self._context.load_verify_locations(cadata=certificate.public_bytes(Encoding.PEM).decode("ascii"))
            self._fingerprints.add(fingerprint)
            logger.info(f"已信任 CA 证书: {certificate.subject.rfc4514_string()} sha256={fingerprint.hex()}")

    def is_trusted(self, certificate: x509.Certificate) -> bool:
        return certificate.fingerprint(hashes.SHA256()) in self._fingerprints


class _ChallengeBasicAuth(httpx.Auth):
    """先不带凭据发送请求，收到 401 后再携带 Basic 凭据重试一次。"""

    def __init__(self, username: str, password: str):
        token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        self._authorization = f"Basic {token}"

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        response = yield request
        if response.status_code == 401:
            request.headers["Authorization"] = self._authorization
            yield request


def _split_address(address: str) -> tuple[str, _ChallengeBasicAuth | None]:
    """
    拆分地址中的 user-info，返回去掉凭据后的 URL 与对应的认证器。
    凭据只按第一个冒号拆分，密码中可以包含冒号。
    :raises ValueError: 地址格式错误时。
    """
    parts = urlsplit(address.strip())
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"无效的节点地址: {redact_address(address)}")
    # 端口非法时这里会抛出 ValueError
    _ = parts.port
    try:
        parts.hostname.encode("idna")
    except UnicodeError as e:
        raise ValueError(f"无效的节点主机名: {redact_address(address)}") from e

    userinfo, _, hostport = parts.netloc.rpartition("@")
    url = urlunsplit(parts._replace(netloc=hostport))
    if not userinfo:
        return url, None
    username, _, password = userinfo.partition(":")
    return url, _ChallengeBasicAuth(unquote(username), unquote(password))


def redact_address(address: str) -> str:
    """隐藏地址中的凭据，用于日志输出。"""
    try:
        parts = urlsplit(address)
    except ValueError:
        return "<invalid address>"
    if "@" not in parts.netloc:
        return address
    return urlunsplit(parts._replace(netloc="***@" + parts.netloc.rpartition("@")[2]))


class ConnectivityProber:
    """
    使用共享的 CA 信任客户端探测节点是否可达。
    客户端在探测器生命周期内只创建一次。
    """

    def __init__(
        self,
        trust_manager: CATrustManager | None = None,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ):
        self.trust_manager = trust_manager or CATrustManager()
        self._client = client or httpx.Client(
            verify=self.trust_manager.context,
            timeout=timeout,
            follow_redirects=False,
        )

    def trust(self, certificates: Iterable[x509.Certificate]) -> None:
        self.trust_manager.trust(certificates)

    def probe(self, address: str) -> bool:
        """
        探测节点地址。
        :return: 收到 2xx 响应返回 True；其他状态码、超时、握手失败、连接被拒绝或地址无效均返回 False。
        """
        try:
            url, auth = _split_address(address)
        except ValueError as e:
            logger.warning(f"节点地址无效，视为不可达: {e}")
            return False

        safe_address = redact_address(address)
        try:
            response = self._client.get(url, auth=auth)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.info(f"探测 {safe_address} 失败: {e.__class__.__name__}: {e}")
            return False

        if response.is_success:
            logger.debug(f"探测 {safe_address} 成功: HTTP {response.status_code}")
            return True
        logger.info(f"探测 {safe_address} 返回非成功状态: HTTP {response.status_code}")
        return False

    def close(self) -> None:
        self._client.close()
