"""
信任引导所依赖的存储与节点注册表。

协调器只依赖下列协议；默认实现基于 data_dir 下的文件，每次写入都是原子替换，
因此同一周期内后续的读取总能看到之前的写入。

目录布局：
- records/<node_id>.json  节点引导记录
- csr/<node_id>.csr       节点提交的 CSR 原始字节
- chains/<node_id>.pem    签发后的证书链（拼接的 PEM）
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Mapping, Protocol

from loguru import logger
from pydantic import ValidationError

from src.preflight.bootstrap.schemas import BootstrapRecord, validate_node_id
from src.preflight.ca.schemas import CertificateChain
from src.preflight.files import atomic_write_bytes


class NodeNotFoundError(LookupError):
    """节点注册表中不存在该节点。"""


class BootstrapRecordStore(Protocol):
    def stream_all(self) -> List[BootstrapRecord]: ...

    def get(self, node_id: str) -> BootstrapRecord | None: ...

    def save(self, record: BootstrapRecord) -> None: ...


class SigningRequestStore(Protocol):
    def read(self, node_id: str) -> bytes | None: ...

    def write(self, node_id: str, csr: bytes) -> None: ...


class CertificateChainStore(Protocol):
    def read(self, node_id: str) -> CertificateChain | None: ...

    def write(self, node_id: str, chain: CertificateChain) -> None: ...


class NodeRegistry(Protocol):
    def resolve_address(self, node_id: str) -> str: ...


class _FileStore:
    suffix = ""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def _path(self, node_id: str) -> Path:
        return self.base_dir / f"{validate_node_id(node_id)}{self.suffix}"


class FileBootstrapRecordStore(_FileStore):
    """每个节点一个 JSON 文件的引导记录存储。"""

    suffix = ".json"

    def stream_all(self) -> List[BootstrapRecord]:
        if not self.base_dir.exists():
            return []
        records = []
        for path in sorted(self.base_dir.glob(f"*{self.suffix}")):
            try:
                records.append(BootstrapRecord.model_validate_json(path.read_bytes()))
            except ValidationError as e:
                logger.error(f"引导记录文件损坏，已忽略: {path}: {e}")
            except OSError as e:
                logger.error(f"无法读取引导记录文件，已忽略: {path}: {e}")
        return records

    def get(self, node_id: str) -> BootstrapRecord | None:
        path = self._path(node_id)
        if not path.exists():
            return None
        return BootstrapRecord.model_validate_json(path.read_bytes())

    def save(self, record: BootstrapRecord) -> None:
        atomic_write_bytes(self._path(record.node_id), record.model_dump_json(indent=2).encode("utf-8"))


class FileSigningRequestStore(_FileStore):
    """节点提交的 CSR，只读不删。"""

    suffix = ".csr"

    def read(self, node_id: str) -> bytes | None:
        path = self._path(node_id)
        if not path.exists():
            return None
        return path.read_bytes()

    def write(self, node_id: str, csr: bytes) -> None:
        atomic_write_bytes(self._path(node_id), csr)


class FileCertificateChainStore(_FileStore):
    """签发后的证书链，重新签发时覆盖。"""

    suffix = ".pem"

    def read(self, node_id: str) -> CertificateChain | None:
        path = self._path(node_id)
        if not path.exists():
            return None
        return CertificateChain.from_pem(path.read_bytes())

    def write(self, node_id: str, chain: CertificateChain) -> None:
        atomic_write_bytes(self._path(node_id), chain.to_pem())


class StaticNodeRegistry:
    """基于配置的节点地址表。"""

    def __init__(self, addresses: Mapping[str, str] | None = None):
        self._addresses: Dict[str, str] = dict(addresses or {})

    def register(self, node_id: str, address: str) -> None:
        self._addresses[node_id] = address

    def resolve_address(self, node_id: str) -> str:
        try:
            return self._addresses[node_id]
        except KeyError:
            raise NodeNotFoundError(f"未找到节点: {node_id}") from None
