"""全局配置加载模块：从环境变量构建路由、执行与日志参数并提供缓存访问。"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """系统运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Orchestration Core"
    api_prefix: str = "/api/v1"
    environment: str = "dev"

    # 为空时使用包内自带的描述符目录。
    catalog_dir: Path | None = None

    database_url: str = "sqlite:///./orchestration.db"
    session_cache_persist: bool = False
    session_cache_max_entries: int = 128
    # 内存中同时保留缓存的会话数上限，超出后按最久未访问淘汰。
    session_cache_max_sessions: int = 1024

    keyword_weight: float = 3.0
    file_weight: float = 4.0
    context_weight: float = 2.0
    profile_overlap_weight: float = 2.0
    specificity_bonus: float = 5.0
    max_supporting_handlers: int = 3
    max_dependency_iterations: int = 5
    secondary_domain_ratio: float = 0.5

    step_timeout_seconds: float | None = 15 * 60
    handler_base_url: str | None = None
    handler_request_timeout_seconds: int = 30

    log_dir: Path = Field(default=Path("./logs"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_session_ids: str = ""
    log_redaction_mode: str = "standard"
    log_payload_preview_chars: int = 2048
    log_max_bytes: int = 20 * 1024 * 1024
    log_backup_count: int = 5

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_session_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_session_ids)

    def resolved_catalog_dir(self) -> Path:
        """返回描述符目录；未配置时指向包内默认目录。"""
        if self.catalog_dir is None:
            return Path(__file__).resolve().parent / "domain" / "catalog" / "data"
        if not self.catalog_dir.is_absolute():
            return (Path.cwd() / self.catalog_dir).resolve()
        return self.catalog_dir


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings。"""
    return Settings()
