"""
集群信任引导协调器。

每个周期：
1. 解析 CA 密码并重新加载 CA 材料（不跨周期缓存，以便感知 CA 轮换）；
2. 惰性构建只信任集群 CA 的探测客户端；
3. 签发阶段：为所有 CSR_PENDING 节点签发证书并持久化证书链；
4. 连通性阶段：探测所有 CERT_ISSUED 节点，成功则标记为 CONNECTED。

单个节点的失败不会影响其他节点；CA 材料不可用时整个周期失败并向调用方抛出。
"""

from __future__ import annotations

import threading
from datetime import timedelta
from typing import Callable, FrozenSet

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes
from loguru import logger

from src.preflight.bootstrap.probe import ConnectivityProber, CATrustManager
from src.preflight.bootstrap.schemas import BootstrapRecord, NodeState
from src.preflight.bootstrap.storage import (
    BootstrapRecordStore,
    CertificateChainStore,
    FileBootstrapRecordStore,
    FileCertificateChainStore,
    FileSigningRequestStore,
    NodeRegistry,
    SigningRequestStore,
    StaticNodeRegistry,
)
from src.preflight.ca.core import CAKeystore, sign_csr, verify_issued_by
from src.preflight.ca.schemas import CAKeyMaterial, CertificateChain
from src.preflight.ca.truststore import export_ca_truststore
from src.preflight.config import Config, config

Signer = Callable[[CertificateIssuerPrivateKeyTypes, x509.Certificate, bytes, timedelta], x509.Certificate]

MISSING_CSR_MESSAGE = "节点处于 CSR_PENDING 状态，但未找到 CSR"


class TrustBootstrapReconciler:
    """
    周期性推进节点引导状态机。
    探测客户端由协调器持有，首次需要时构建，在进程生命周期内复用。
    """

    def __init__(
        self,
        *,
        records: BootstrapRecordStore,
        signing_requests: SigningRequestStore,
        chains: CertificateChainStore,
        ca_keystore: CAKeystore,
        nodes: NodeRegistry,
        settings: Config = config,
        signer: Signer = sign_csr,
        prober_factory: Callable[[], ConnectivityProber] | None = None,
    ):
        self._records = records
        self._signing_requests = signing_requests
        self._chains = chains
        self._ca_keystore = ca_keystore
        self._nodes = nodes
        self._settings = settings
        self._signer = signer
        self._prober_factory = prober_factory or self._default_prober
        self._prober: ConnectivityProber | None = None
        self._exported_anchors: FrozenSet[bytes] = frozenset()
        # 周期与 close() 互斥，关闭时等待正在执行的周期结束
        self._lock = threading.Lock()
        self._closed = False

    def _default_prober(self) -> ConnectivityProber:
        trust_manager = CATrustManager(check_hostname=self._settings.probe_check_hostname)
        return ConnectivityProber(trust_manager, timeout=self._settings.probe_timeout_seconds)

    def run_once(self) -> None:
        """
        执行一个协调周期。
        :raises RuntimeError: 无法解析 CA 密码时。
        :raises CAKeystoreError: CA 密钥库不可读、损坏或密码错误时。
        """
        with self._lock:
            if self._closed:
                logger.debug("协调器已关闭，跳过本周期")
                return
            self._run_once_locked()

    def _run_once_locked(self) -> None:
        logger.debug("检查是否有待处理的节点引导步骤")

        password = self._settings.resolve_ca_password()
        material = self._ca_keystore.load(password)
        if material is None:
            logger.warning(f"CA 密钥库不存在，跳过本周期: {self._ca_keystore.path}")
            return

        prober = self._ensure_prober()
        if prober is not None:
            prober.trust(material.trust_anchors)
        self._export_truststore(material)

        for record in self._records.stream_all():
            if record.state == NodeState.CSR_PENDING:
                self._sign(record, material)

        if prober is None:
            logger.warning("探测客户端不可用，跳过本周期的连通性检查")
            return

        for record in self._records.stream_all():
            if record.state == NodeState.CERT_ISSUED:
                self._check_connectivity(record, prober)

    def _ensure_prober(self) -> ConnectivityProber | None:
        if self._prober is None:
            try:
                self._prober = self._prober_factory()
            except Exception as e:
                logger.error(f"无法创建信任集群 CA 的探测客户端: {e}")
                return None
        return self._prober

    def _export_truststore(self, material: CAKeyMaterial) -> None:
        destination = self._settings.truststore_file
        if destination is None:
            return
        anchors = frozenset(c.fingerprint(hashes.SHA256()) for c in material.trust_anchors)
        if anchors == self._exported_anchors and destination.exists():
            return
        truststore_password = self._settings.truststore_password
        if truststore_password is None or not truststore_password.get_secret_value():
            logger.warning(f"已配置信任库导出路径但未配置 truststore_password，跳过导出: {destination}")
            return
        try:
            export_ca_truststore(material, truststore_password.get_secret_value(), destination)
        except (OSError, ValueError) as e:
            logger.error(f"导出 CA 信任库失败: {e}")
            return
        self._exported_anchors = anchors

    def _sign(self, record: BootstrapRecord, material: CAKeyMaterial) -> None:
        node_id = record.node_id
        try:
            csr = self._signing_requests.read(node_id)
            if csr is None:
                logger.error(f"{MISSING_CSR_MESSAGE}: {node_id}")
                self._records.save(record.failed(MISSING_CSR_MESSAGE))
                return

            validity = record.requested_validity
            if validity is None:
                validity = self._settings.default_validity
            leaf = self._signer(material.private_key, material.ca_certificate, csr, validity)
            verify_issued_by(leaf, material.ca_certificate)
            chain = CertificateChain(
                leaf=leaf,
                ca_certificates=[material.ca_certificate, material.root_certificate],
            )
            self._chains.write(node_id, chain)
            logger.info(f"已为节点 {node_id} 签发证书并保存证书链，有效期 {validity}")

            if self._settings.mark_issued_after_signing:
                self._records.save(record.transition(NodeState.CERT_ISSUED))
        except Exception as e:
            logger.exception(f"无法为节点 {node_id} 签发 CSR: {e}")
            self._save_quietly(record.failed(str(e) or e.__class__.__name__))

    def _save_quietly(self, record: BootstrapRecord) -> None:
        try:
            self._records.save(record)
        except Exception as e:
            logger.error(f"保存节点 {record.node_id} 的引导记录失败: {e}")

    def _check_connectivity(self, record: BootstrapRecord, prober: ConnectivityProber) -> None:
        node_id = record.node_id
        try:
            address = self._nodes.resolve_address(node_id)
            if prober.probe(address):
                self._records.save(record.transition(NodeState.CONNECTED))
                logger.info(f"节点 {node_id} 已通过 CA 信任通道连通")
            else:
                logger.info(f"节点 {node_id} 暂不可达，下个周期重试")
        except Exception as e:
            logger.warning(f"连接节点 {node_id} 时发生异常: {e}，下个周期重试")

    def close(self) -> None:
        """关闭探测客户端；若周期正在执行，则阻塞到它结束。之后的 run_once 不再执行。"""
        with self._lock:
            self._closed = True
            if self._prober is not None:
                self._prober.close()
                self._prober = None


def create_reconciler(settings: Config = config) -> TrustBootstrapReconciler:
    """按配置装配基于文件的存储、CA 密钥库与静态节点注册表。"""
    data_dir = settings.data_dir
    return TrustBootstrapReconciler(
        records=FileBootstrapRecordStore(data_dir / "records"),
        signing_requests=FileSigningRequestStore(data_dir / "csr"),
        chains=FileCertificateChainStore(data_dir / "chains"),
        ca_keystore=CAKeystore(settings.ca_keystore_path()),
        nodes=StaticNodeRegistry(settings.nodes),
        settings=settings,
    )
