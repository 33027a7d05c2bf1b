"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_nodes: 将字符串/JSON 解析为 Dict[str, str]（节点 ID -> 地址）
"""

from __future__ import annotations

import json
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, Dict, Tuple

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    data_dir: Path = Path("data")
    ca_keystore_file: Path | None = None
    ca_password: SecretStr | None = None
    password_secret: SecretStr | None = None
    default_validity: timedelta = timedelta(days=3650)
    # 签发成功后是否把节点推进到 CERT_ISSUED；关闭时签发后仍停留在 CSR_PENDING
    mark_issued_after_signing: bool = True
    initial_delay_seconds: float = 2.0
    period_seconds: float = 2.0
    probe_timeout_seconds: float = 5.0
    probe_check_hostname: bool = True
    truststore_file: Path | None = None
    truststore_password: SecretStr | None = None
    shutdown_timeout_seconds: float = 10.0
    # 环境变量中的 nodes 交给 parse_nodes 解析，不做默认的 JSON 解码
    nodes: Annotated[Dict[str, str], NoDecode] = {}

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("nodes", mode="before")
    @classmethod
    def parse_nodes(cls, value: Any) -> Dict[str, str]:
        """支持从环境变量以 JSON 或 `id=url` 分隔符（逗号/分号/空白）形式解析 nodes。"""
        if value is None or value == "":
            return {}
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, str):
            text = value.strip()
            # 优先尝试 JSON
            try:
                loaded = json.loads(text)
                if isinstance(loaded, dict):
                    return {str(k): str(v) for k, v in loaded.items()}
            except ValueError:
                pass
            # 回退为分隔符拆分（, ; 空白），每项形如 node-1=https://host:9200
            result: Dict[str, str] = {}
            for part in re.split(r"[\s,;]+", text):
                if not part:
                    continue
                node_id, sep, address = part.partition("=")
                if not sep or not node_id or not address:
                    raise ValueError(f"无法解析节点配置项: {part!r}，应为 id=url")
                result[node_id] = address
            return result
        return value

    def configured_ca_exists(self) -> bool:
        """是否已显式配置了 CA（密钥库路径与密码均已设置）。"""
        return self.ca_keystore_file is not None and self.ca_password is not None

    def resolve_ca_password(self) -> str:
        """
        解析用于解锁 CA 密钥库的密码。
        已配置 CA 时使用 ca_password，否则回退到进程共享的 password_secret。
        :raises RuntimeError: 两者都不可用时。
        """
        if self.configured_ca_exists():
            assert self.ca_password is not None
            secret = self.ca_password.get_secret_value()
        elif self.password_secret is not None:
            secret = self.password_secret.get_secret_value()
        else:
            secret = ""
        if not secret:
            raise RuntimeError("未配置 CA 密码或 password_secret，无法解锁 CA 密钥库")
        return secret

    def ca_keystore_path(self) -> Path:
        """CA 密钥库路径：优先使用显式配置，否则位于 data_dir/ca/ca.p12。"""
        if self.ca_keystore_file is not None:
            return self.ca_keystore_file
        return self.data_dir / "ca" / "ca.p12"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, ValueError):
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按键名/别名返回字段值。"""
                self._load()
                data = self._data or {}
                key_alias = getattr(field, "alias", None) or field_name
                if key_alias in data:
                    return data[key_alias], key_alias, True
                if field_name in data:
                    return data[field_name], field_name, True
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


config = Config()
