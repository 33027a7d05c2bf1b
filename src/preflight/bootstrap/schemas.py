"""
文件功能：
    定义集群信任引导相关的公开数据模型（Pydantic）。

公开接口：
    - NodeState: 节点引导状态
    - BootstrapRecord: 节点引导记录
"""

from __future__ import annotations

import re
from datetime import timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

_NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


class NodeState(str, Enum):
    """节点引导状态。CONNECTED 与 ERROR 为终态，协调器不会再推进。"""

    CSR_PENDING = "CSR_PENDING"
    CERT_ISSUED = "CERT_ISSUED"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


def validate_node_id(node_id: str) -> str:
    """节点 ID 会作为存储文件名使用，只允许字母、数字、`.`、`_`、`-` 且不能以 `.` 开头。"""
    if not _NODE_ID_PATTERN.match(node_id):
        raise ValueError(f"非法的节点 ID: {node_id!r}")
    return node_id


class BootstrapRecord(BaseModel):
    """集群中一个等待（或已完成）信任引导的节点。"""

    model_config = ConfigDict(frozen=True)

    node_id: str = Field(description="节点唯一标识")
    state: NodeState = Field(default=NodeState.CSR_PENDING, description="引导状态")
    requested_validity: timedelta | None = Field(default=None, description="请求的证书有效期，缺省时使用默认值")
    error_message: str | None = Field(default=None, description="仅在 ERROR 状态下设置")

    @field_validator("node_id")
    @classmethod
    def _check_node_id(cls, value: str) -> str:
        return validate_node_id(value)

    def transition(self, state: NodeState) -> "BootstrapRecord":
        """返回推进到新状态的副本，并清除错误信息。"""
        return self.model_copy(update={"state": state, "error_message": None})

    def failed(self, message: str) -> "BootstrapRecord":
        """返回进入 ERROR 状态的副本。"""
        return self.model_copy(update={"state": NodeState.ERROR, "error_message": message})
