"""描述符仓库：加载、校验并索引能力配置与处理器目录，构建后只读。"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from pydantic import ValidationError

from orchestration_core.domain.catalog.records import CatalogFile
from orchestration_core.domain.errors import ConfigurationError
from orchestration_core.domain.models import CapabilityProfile, Handler

logger = logging.getLogger(__name__)

PROFILES_FILE = "profiles.json"
HANDLERS_FILE = "handlers.json"


def find_dependency_cycle(
    start: str,
    dependencies_of: Callable[[str], Iterable[str]],
) -> list[str] | None:
    """从 start 出发深度优先查找依赖环，返回环路径（首尾相同）或 None。"""
    path: list[str] = []
    on_path: set[str] = set()
    finished: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in on_path:
            return path[path.index(node):] + [node]
        if node in finished:
            return None
        path.append(node)
        on_path.add(node)
        for dep in dependencies_of(node):
            cycle = visit(dep)
            if cycle is not None:
                return cycle
        path.pop()
        on_path.discard(node)
        finished.add(node)
        return None

    return visit(start)


@dataclass(slots=True)
class CatalogHealthReport:
    """目录健康检查结果，仅包含告警，不抛异常。"""
    profile_count: int
    handler_count: int
    dependency_cycles: list[list[str]] = field(default_factory=list)
    unlinked_profiles: list[str] = field(default_factory=list)
    untriggered_handlers: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not (self.dependency_cycles or self.untriggered_handlers)


class DescriptorStore:
    """描述符仓库，统一管理不可变的能力配置与处理器实例。"""

    def __init__(self, profiles: Mapping[str, CapabilityProfile], handlers: Mapping[str, Handler]) -> None:
        self._profiles = MappingProxyType(dict(profiles))
        self._handlers = MappingProxyType(dict(handlers))
        self._keyword_vocabulary = frozenset(
            keyword for profile in self._profiles.values() for keyword in profile.triggers.keywords
        )
        self._labels: dict[str, str] = {}
        for handler in self._handlers.values():
            for label in (handler.handler_id, handler.name, *handler.aliases):
                self._labels.setdefault(label.strip().lower(), handler.handler_id)

    @classmethod
    def build(cls, profiles: Iterable[CapabilityProfile], handlers: Iterable[Handler]) -> DescriptorStore:
        """校验并构建仓库；任何引用错误都在此处以 ConfigurationError 抛出。"""
        profile_map: dict[str, CapabilityProfile] = {}
        for profile in profiles:
            if profile.profile_id in profile_map:
                raise ConfigurationError(
                    f"duplicate profile id: {profile.profile_id}", identifiers=[profile.profile_id]
                )
            profile_map[profile.profile_id] = profile

        handler_map: dict[str, Handler] = {}
        for handler in handlers:
            if handler.handler_id in handler_map:
                raise ConfigurationError(
                    f"duplicate handler id: {handler.handler_id}", identifiers=[handler.handler_id]
                )
            handler_map[handler.handler_id] = handler

        for profile in profile_map.values():
            for dep in profile.dependencies:
                if dep not in profile_map:
                    raise ConfigurationError(
                        f"profile {profile.profile_id} depends on unknown profile {dep}",
                        identifiers=[profile.profile_id, dep],
                    )

        for handler in handler_map.values():
            cls._validate_handler(handler, profile_map, handler_map)

        store = cls(profile_map, handler_map)
        logger.info(
            "descriptor store built",
            extra={
                "event": "catalog.build.succeeded",
                "payload_preview": {"profiles": len(profile_map), "handlers": len(handler_map)},
            },
        )
        return store

    @staticmethod
    def _validate_handler(
        handler: Handler,
        profiles: Mapping[str, CapabilityProfile],
        handlers: Mapping[str, Handler],
    ) -> None:
        hid = handler.handler_id
        if not handler.domains:
            raise ConfigurationError(f"handler {hid} declares no domain tag", identifiers=[hid])
        low, high = handler.complexity_range
        if not (1 <= low <= high <= 10):
            raise ConfigurationError(
                f"handler {hid} has invalid complexity range [{low}, {high}]", identifiers=[hid]
            )
        for profile_id in handler.profiles:
            if profile_id not in profiles:
                raise ConfigurationError(
                    f"handler {hid} references unknown profile {profile_id}", identifiers=[hid, profile_id]
                )
        for relation, others in (("works_with", handler.works_with), ("conflicts_with", handler.conflicts_with)):
            for other in sorted(others):
                if other == hid:
                    raise ConfigurationError(f"handler {hid} lists itself in {relation}", identifiers=[hid])
                if other not in handlers:
                    raise ConfigurationError(
                        f"handler {hid} {relation} unknown handler {other}", identifiers=[hid, other]
                    )
        overlap = handler.works_with & handler.conflicts_with
        if overlap:
            raise ConfigurationError(
                f"handler {hid} both works with and conflicts with {sorted(overlap)}",
                identifiers=[hid, *sorted(overlap)],
            )

    def profile(self, profile_id: str) -> CapabilityProfile:
        try:
            return self._profiles[profile_id]
        except KeyError as exc:
            raise KeyError(f"unknown profile_id: {profile_id}") from exc

    def handler(self, handler_id: str) -> Handler:
        try:
            return self._handlers[handler_id]
        except KeyError as exc:
            raise KeyError(f"unknown handler_id: {handler_id}") from exc

    def has_handler(self, handler_id: str) -> bool:
        return handler_id in self._handlers

    def profiles(self) -> list[CapabilityProfile]:
        return list(self._profiles.values())

    def handlers(self) -> list[Handler]:
        return list(self._handlers.values())

    @property
    def keyword_vocabulary(self) -> frozenset[str]:
        return self._keyword_vocabulary

    def find_handler_by_label(self, label: str) -> Handler | None:
        """按 id、展示名或别名查找处理器，大小写不敏感。"""
        handler_id = self._labels.get(label.strip().lower())
        return self._handlers[handler_id] if handler_id else None

    def handler_labels(self) -> dict[str, str]:
        return dict(self._labels)

    def health_report(self) -> CatalogHealthReport:
        """汇总依赖环、未被引用的配置与无触发器的处理器。"""
        report = CatalogHealthReport(profile_count=len(self._profiles), handler_count=len(self._handlers))
        seen_cycles: set[frozenset[str]] = set()
        for profile_id in sorted(self._profiles):
            cycle = find_dependency_cycle(profile_id, lambda pid: self._profiles[pid].dependencies)
            if cycle and frozenset(cycle) not in seen_cycles:
                seen_cycles.add(frozenset(cycle))
                report.dependency_cycles.append(cycle)
        linked = {pid for handler in self._handlers.values() for pid in handler.profiles}
        report.unlinked_profiles = sorted(pid for pid in self._profiles if pid not in linked)
        report.untriggered_handlers = sorted(
            handler.handler_id for handler in self._handlers.values() if handler.triggers.is_empty()
        )
        return report

    @staticmethod
    def reload(directory: Path) -> DescriptorStore:
        """显式重载：返回一个新仓库，旧仓库保持不变。"""
        return load_catalog(directory)


def _read_catalog_file(path: Path) -> CatalogFile:
    if not path.exists():
        raise ConfigurationError(f"descriptor file missing: {path}", identifiers=[str(path)])
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return CatalogFile.model_validate(payload)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"descriptor file is not valid JSON: {path}: {exc}", identifiers=[str(path)]) from exc
    except ValidationError as exc:
        raise ConfigurationError(f"descriptor file failed validation: {path}: {exc}", identifiers=[str(path)]) from exc


def load_catalog(directory: Path) -> DescriptorStore:
    """从目录读取 profiles.json 与 handlers.json 并构建描述符仓库。"""
    logger.info(
        "catalog load started",
        extra={"event": "catalog.load.started", "payload_preview": {"directory": str(directory)}},
    )
    profiles_file = _read_catalog_file(directory / PROFILES_FILE)
    handlers_file = _read_catalog_file(directory / HANDLERS_FILE)
    return DescriptorStore.build(
        (record.to_domain() for record in profiles_file.profiles),
        (record.to_domain() for record in handlers_file.handlers),
    )
