"""
文件写入工具。

公开接口：
- atomic_write_bytes: 先写入同目录临时文件，成功后再替换目标文件
"""

from __future__ import annotations

import os
from pathlib import Path


def atomic_write_bytes(path: Path, data: bytes, mode: int | None = None) -> None:
    """
    以原子方式写入文件：目标文件要么是旧内容，要么是完整的新内容。
    :param path: 目标文件路径，父目录不存在时自动创建。
    :param data: 待写入的内容。
    :param mode: 可选的文件权限（如 0o600）。
    :raises OSError: 无法写入时。
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        tmp_path.replace(path)
    finally:
        # 替换成功后临时文件已不存在；失败时清理残留
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
