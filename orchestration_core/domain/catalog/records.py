"""描述符记录模型：约束 profiles.json / handlers.json 的结构并转换为领域实体。"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from orchestration_core.domain.enums import PriorityTier
from orchestration_core.domain.models import CapabilityProfile, Handler, TriggerSet


class TriggerRecord(BaseModel):
    """触发器记录。"""
    model_config = ConfigDict(extra="forbid")

    keywords: list[str] = Field(default_factory=list)
    file_patterns: list[str] = Field(default_factory=list)
    contexts: list[str] = Field(default_factory=list)
    markers: list[str] = Field(default_factory=list)

    def to_domain(self) -> TriggerSet:
        return TriggerSet(
            keywords=tuple(item.strip().lower() for item in self.keywords if item.strip()),
            file_patterns=tuple(item.strip() for item in self.file_patterns if item.strip()),
            contexts=tuple(item.strip().lower() for item in self.contexts if item.strip()),
            markers=tuple(item.strip() for item in self.markers if item.strip()),
        )


class ProfileRecord(BaseModel):
    """能力配置描述记录。"""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    category: str = "general"
    description: str = ""
    tier: PriorityTier = PriorityTier.medium
    triggers: TriggerRecord = Field(default_factory=TriggerRecord)
    dependencies: list[str] = Field(default_factory=list)

    def to_domain(self) -> CapabilityProfile:
        return CapabilityProfile(
            profile_id=self.id,
            category=self.category,
            description=self.description,
            tier=self.tier,
            triggers=self.triggers.to_domain(),
            dependencies=tuple(self.dependencies),
        )


class HandlerRecord(BaseModel):
    """处理器描述记录。"""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str
    category: str
    description: str = ""
    domains: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
    triggers: TriggerRecord = Field(default_factory=TriggerRecord)
    profiles: list[str] = Field(default_factory=list)
    exclusions: list[str] = Field(default_factory=list)
    works_with: list[str] = Field(default_factory=list)
    conflicts_with: list[str] = Field(default_factory=list)
    priority: int = 5
    complexity: tuple[int, int] = (1, 10)

    def to_domain(self) -> Handler:
        return Handler(
            handler_id=self.id,
            name=self.name,
            category=self.category,
            description=self.description,
            domains=tuple(item.strip().lower() for item in self.domains if item.strip()),
            aliases=tuple(item.strip().lower() for item in self.aliases if item.strip()),
            triggers=self.triggers.to_domain(),
            profiles=tuple(self.profiles),
            exclusions=tuple(self.exclusions),
            works_with=frozenset(self.works_with),
            conflicts_with=frozenset(self.conflicts_with),
            priority=self.priority,
            complexity_range=self.complexity,
        )


class CatalogFile(BaseModel):
    """描述符文件外层结构。"""
    version: str = "1"
    profiles: list[ProfileRecord] = Field(default_factory=list)
    handlers: list[HandlerRecord] = Field(default_factory=list)
