"""描述符目录接口：列出处理器与能力配置，并提供目录健康检查。"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from orchestration_core.api.v1.schemas import CatalogHealthResponse, HandlerResponse, ProfileResponse
from orchestration_core.application.container import get_descriptor_store
from orchestration_core.domain.catalog.store import DescriptorStore
from orchestration_core.domain.models import CapabilityProfile, Handler, TriggerSet

router = APIRouter()


def _store() -> DescriptorStore:
    return get_descriptor_store()


def _triggers(triggers: TriggerSet) -> dict[str, list[str]]:
    return {
        "keywords": list(triggers.keywords),
        "file_patterns": list(triggers.file_patterns),
        "contexts": list(triggers.contexts),
        "markers": list(triggers.markers),
    }


def _handler_response(handler: Handler) -> HandlerResponse:
    return HandlerResponse(
        id=handler.handler_id,
        name=handler.name,
        category=handler.category,
        description=handler.description,
        domains=list(handler.domains),
        aliases=list(handler.aliases),
        profiles=list(handler.profiles),
        works_with=sorted(handler.works_with),
        conflicts_with=sorted(handler.conflicts_with),
        priority=handler.priority,
        complexity=handler.complexity_range,
        triggers=_triggers(handler.triggers),
    )


def _profile_response(profile: CapabilityProfile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.profile_id,
        category=profile.category,
        description=profile.description,
        tier=profile.tier.name,
        dependencies=list(profile.dependencies),
        triggers=_triggers(profile.triggers),
    )


@router.get("/handlers", response_model=list[HandlerResponse])
def list_handlers(
    category: str | None = None,
    store: DescriptorStore = Depends(_store),
) -> list[HandlerResponse]:
    """按可选类别过滤并返回处理器列表。"""
    handlers = sorted(store.handlers(), key=lambda item: item.handler_id)
    return [_handler_response(item) for item in handlers if category is None or item.category == category]


@router.get("/handlers/{handler_id}", response_model=HandlerResponse)
def get_handler(
    handler_id: str,
    store: DescriptorStore = Depends(_store),
) -> HandlerResponse:
    try:
        return _handler_response(store.handler(handler_id))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc


@router.get("/profiles", response_model=list[ProfileResponse])
def list_profiles(store: DescriptorStore = Depends(_store)) -> list[ProfileResponse]:
    return [_profile_response(item) for item in sorted(store.profiles(), key=lambda item: item.profile_id)]


@router.get("/catalog/health", response_model=CatalogHealthResponse)
def catalog_health(store: DescriptorStore = Depends(_store)) -> CatalogHealthResponse:
    """依赖环、未被引用的配置与无触发器的处理器。"""
    report = store.health_report()
    return CatalogHealthResponse(
        healthy=report.healthy,
        profile_count=report.profile_count,
        handler_count=report.handler_count,
        dependency_cycles=report.dependency_cycles,
        unlinked_profiles=report.unlinked_profiles,
        untriggered_handlers=report.untriggered_handlers,
    )
