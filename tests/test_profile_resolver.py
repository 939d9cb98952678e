"""能力配置解析测试：三层检测、依赖展开、排序、作用域上限与会话缓存。"""

from __future__ import annotations

import pytest

from orchestration_core.config import Settings
from orchestration_core.domain.catalog.store import DescriptorStore
from orchestration_core.domain.enums import PriorityTier, ScopeClass
from orchestration_core.domain.errors import DependencyCycleError
from orchestration_core.domain.routing.analyzer import ContextAnalyzer
from orchestration_core.domain.routing.profile_resolver import SCOPE_CEILINGS, ProfileResolver
from orchestration_core.domain.routing.session_cache import SessionCache, SessionCacheRegistry


def test_bug_report_profiles_include_dependencies(store, settings, scenario_a) -> None:
    """缺陷报告激活的配置包含其依赖。"""
    ctx = ContextAnalyzer(store).analyze(scenario_a)
    profiles = ProfileResolver(store, settings).resolve(ctx)
    assert [item.profile_id for item in profiles] == ["debugging-protocol", "testing-standards", "go-conventions"]


def test_marker_layer_and_stack_tags(store, settings, make_context) -> None:
    """项目标记层按技术栈激活配置。"""
    ctx = make_context("tidy things up", scope=ScopeClass.system_wide)
    ctx.project_markers = {"pyproject.toml": "[project]\ndependencies = ['fastapi']"}
    ctx.stack_tags = frozenset({"python", "fastapi"})
    profiles = ProfileResolver(store, settings).resolve(ctx)
    assert [item.profile_id for item in profiles] == ["python-conventions"]


@pytest.mark.parametrize("scope", list(ScopeClass))
def test_profile_count_never_exceeds_scope_ceiling(store, settings, make_context, scope: ScopeClass) -> None:
    """激活配置数不超过作用域上限。"""
    ctx = make_context(
        "security test deploy database review docs plan performance bug ui mobile api react laravel",
        scope=scope,
    )
    profiles = ProfileResolver(store, settings).resolve(ctx)
    assert len(profiles) <= SCOPE_CEILINGS[scope]


def test_truncation_keeps_highest_tiers(store, settings, make_context) -> None:
    """截断时保留优先级最高的配置。"""
    ctx = make_context(
        "security test deploy database review docs plan performance",
        scope=ScopeClass.single_file,
    )
    profiles = ProfileResolver(store, settings).resolve(ctx)
    assert [item.profile_id for item in profiles] == [
        "security-baseline",
        "database-design",
        "deployment-checklist",
    ]


def test_keyword_layer_outranks_file_layer_on_equal_tier(settings, make_context, make_profile, make_handler) -> None:
    """同一优先级下关键字层排在文件层之前。"""
    store = DescriptorStore.build(
        [
            make_profile("a-file", file_patterns=("*.py",), tier=PriorityTier.high),
            make_profile("z-keyword", keywords=("deploy",), tier=PriorityTier.high),
        ],
        [make_handler("h1", keywords=("deploy",))],
    )
    ctx = make_context("deploy it", active_file="app/main.py")
    profiles = ProfileResolver(store, settings).resolve(ctx)
    assert [item.profile_id for item in profiles] == ["z-keyword", "a-file"]


def test_cache_hit_skips_layer_matching(store, settings, scenario_a) -> None:
    """同一指纹第二次解析结果一致且不再运行检测层。"""
    ctx = ContextAnalyzer(store).analyze(scenario_a)
    resolver = ProfileResolver(store, settings)
    cache = SessionCache("s-a")
    first = resolver.resolve(ctx, cache)
    second = resolver.resolve(ctx, cache)
    assert first == second
    assert resolver.layer_runs == 1
    assert cache.hits == 1
    assert cache.misses == 1


def test_cache_hit_applies_current_scope_ceiling(store, settings, make_context) -> None:
    """同一指纹先以全局作用域缓存，再以单文件作用域命中时仍受单文件上限约束。"""
    text = "security test deploy database review docs plan performance"
    resolver = ProfileResolver(store, settings)
    cache = SessionCache("s-scope")
    wide = resolver.resolve(make_context(text, scope=ScopeClass.system_wide), cache)
    narrow = resolver.resolve(make_context(text, scope=ScopeClass.single_file), cache)

    assert len(wide) > SCOPE_CEILINGS[ScopeClass.single_file]
    assert resolver.layer_runs == 1
    assert [item.profile_id for item in narrow] == [
        "security-baseline",
        "database-design",
        "deployment-checklist",
    ]


def test_cache_bypass_phrase_clears_session_cache(store, settings, make_context) -> None:
    """请求中的绕过短语清空会话缓存。"""
    resolver = ProfileResolver(store, settings)
    cache = SessionCache("s1")
    resolver.resolve(make_context("fix the crash"), cache)
    assert len(cache) == 1

    resolver.resolve(make_context("fix the crash, don't use cached rules"), cache)
    assert resolver.layer_runs == 2
    assert len(cache) == 1


def test_sessions_do_not_share_cache(store, settings, scenario_a) -> None:
    """不同会话不共享缓存。"""
    ctx = ContextAnalyzer(store).analyze(scenario_a)
    resolver = ProfileResolver(store, settings)
    registry = SessionCacheRegistry()
    resolver.resolve(ctx, registry.get("s-1"))
    resolver.resolve(ctx, registry.get("s-2"))
    assert resolver.layer_runs == 2


def test_dependency_cycle_raises(settings, make_context, make_profile, make_handler) -> None:
    """A -> B -> A 的依赖环必须报错而不是无限循环。"""
    store = DescriptorStore.build(
        [make_profile("a", keywords=("alpha",), dependencies=("b",)), make_profile("b", dependencies=("a",))],
        [make_handler("h1", keywords=("alpha",), profiles=("a",))],
    )
    with pytest.raises(DependencyCycleError) as exc_info:
        ProfileResolver(store, settings).resolve(make_context("alpha release"))
    assert exc_info.value.chain == ("a", "b", "a")


def test_unreachable_cycle_does_not_affect_resolution(settings, make_context, make_profile, make_handler) -> None:
    """未被激活的依赖环不影响解析。"""
    store = DescriptorStore.build(
        [
            make_profile("a", keywords=("alpha",)),
            make_profile("x", keywords=("xray",), dependencies=("y",)),
            make_profile("y", dependencies=("x",)),
        ],
        [make_handler("h1", keywords=("alpha",), profiles=("a",))],
    )
    profiles = ProfileResolver(store, settings).resolve(make_context("alpha release"))
    assert [item.profile_id for item in profiles] == ["a"]


def test_expansion_is_bounded_by_iteration_limit(make_context, make_profile, make_handler) -> None:
    """依赖展开受迭代次数上限约束。"""
    store = DescriptorStore.build(
        [
            make_profile("p0", keywords=("start",), dependencies=("p1",)),
            make_profile("p1", dependencies=("p2",)),
            make_profile("p2"),
        ],
        [make_handler("h1", keywords=("start",))],
    )
    resolver = ProfileResolver(store, Settings(_env_file=None, max_dependency_iterations=1))
    with pytest.raises(DependencyCycleError):
        resolver.resolve(make_context("start", scope=ScopeClass.system_wide))
