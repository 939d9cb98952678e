"""测试公共夹具：默认描述符目录、自定义目录构造器与上下文构造器。"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from orchestration_core.config import Settings
from orchestration_core.domain.catalog.store import DescriptorStore, load_catalog
from orchestration_core.domain.enums import PriorityTier, ScopeClass
from orchestration_core.domain.models import CapabilityProfile, Context, Handler, RouteRequest, TriggerSet


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(_env_file=None, log_dir=tmp_path / "logs", catalog_dir=None)


@pytest.fixture(scope="session")
def store() -> DescriptorStore:
    return load_catalog(Settings(_env_file=None).resolved_catalog_dir())


@pytest.fixture()
def make_profile() -> Callable[..., CapabilityProfile]:
    def build(
        profile_id: str,
        *,
        keywords: tuple[str, ...] = (),
        file_patterns: tuple[str, ...] = (),
        dependencies: tuple[str, ...] = (),
        tier: PriorityTier = PriorityTier.medium,
    ) -> CapabilityProfile:
        return CapabilityProfile(
            profile_id=profile_id,
            category="test",
            triggers=TriggerSet(keywords=keywords, file_patterns=file_patterns),
            dependencies=dependencies,
            tier=tier,
        )

    return build


@pytest.fixture()
def make_handler() -> Callable[..., Handler]:
    def build(
        handler_id: str,
        *,
        category: str = "implementation",
        domains: tuple[str, ...] = ("general",),
        keywords: tuple[str, ...] = (),
        file_patterns: tuple[str, ...] = (),
        profiles: tuple[str, ...] = (),
        exclusions: tuple[str, ...] = (),
        conflicts_with: frozenset[str] = frozenset(),
        works_with: frozenset[str] = frozenset(),
        priority: int = 5,
        complexity_range: tuple[int, int] = (1, 10),
    ) -> Handler:
        return Handler(
            handler_id=handler_id,
            name=handler_id.replace("-", " ").title(),
            category=category,
            domains=domains,
            triggers=TriggerSet(keywords=keywords, file_patterns=file_patterns),
            profiles=profiles,
            exclusions=exclusions,
            works_with=works_with,
            conflicts_with=conflicts_with,
            priority=priority,
            complexity_range=complexity_range,
        )

    return build


@pytest.fixture()
def make_context() -> Callable[..., Context]:
    def build(
        request_text: str,
        *,
        session_id: str = "s-test",
        primary_domain: str = "general",
        secondary_domains: frozenset[str] = frozenset(),
        complexity: float = 5.0,
        scope: ScopeClass = ScopeClass.feature,
        active_file: str | None = None,
        open_files: tuple[str, ...] = (),
        archetype: str | None = None,
        override: str | None = None,
    ) -> Context:
        return Context(
            session_id=session_id,
            request_text=request_text,
            primary_domain=primary_domain,
            secondary_domains=secondary_domains,
            complexity=complexity,
            scope=scope,
            active_file=active_file,
            open_files=open_files,
            archetype=archetype,
            override=override,
        )

    return build


SCENARIO_B_FILES = [
    "backend/api/profile.py",
    "backend/models/user.py",
    "backend/services/profile_service.py",
    "frontend/src/pages/ProfilePage.tsx",
    "frontend/src/components/ProfileCard.tsx",
    "frontend/src/hooks/useProfile.ts",
]


@pytest.fixture()
def scenario_a() -> RouteRequest:
    return RouteRequest(request_text="fix login crash", session_id="s-a", active_file="server/auth.go")


@pytest.fixture()
def scenario_b() -> RouteRequest:
    return RouteRequest(
        request_text="build full-stack user profile page",
        session_id="s-b",
        active_file="frontend/src/pages/ProfilePage.tsx",
        open_files=list(SCENARIO_B_FILES),
    )


@pytest.fixture()
def scenario_c() -> RouteRequest:
    return RouteRequest(
        request_text="use the database specialist for this: add a new api endpoint to the user service",
        session_id="s-c",
        active_file="backend/services/user_service.py",
    )
