"""匹配策略测试：通配语义、关键字匹配与各类匹配器计数。"""

from __future__ import annotations

import pytest

from orchestration_core.domain.routing.matchers import (
    ContextTagMatcher,
    FilePatternMatcher,
    KeywordMatcher,
    ProjectMarkerMatcher,
    compile_glob,
    keyword_present,
)
from orchestration_core.domain.models import tokenize


@pytest.mark.parametrize(
    ("pattern", "path", "expected"),
    [
        ("*.go", "server/auth.go", True),
        ("*.go", "server/auth.golang", False),
        ("server/*.go", "server/nested/auth.go", False),
        ("server/**", "server/nested/auth.go", True),
        ("**/auth/**", "server/auth/login.go", True),
        ("**/auth/**", "server/auth.go", False),
        ("**/tests/**", "tests/test_router.py", True),
        ("**/components/**", "frontend/src/components/ProfileCard.tsx", True),
        ("test_*.py", "backend/tests/test_api.py", True),
        ("docker-compose*.yml", "docker-compose.prod.yml", True),
        ("file?.txt", "file1.txt", True),
        ("file?.txt", "file12.txt", False),
    ],
)
def test_glob_semantics(pattern: str, path: str, expected: bool) -> None:
    """glob 中 ** 跨目录，* 与 ? 不跨目录。"""
    assert compile_glob(pattern).matches(path) is expected


def test_glob_normalizes_windows_separators() -> None:
    """Windows 路径分隔符统一为 /。"""
    assert compile_glob("server/**").matches("server\\auth.go")


def test_keyword_present_single_word_and_phrase() -> None:
    """单词按整词匹配，多词按短语匹配。"""
    text = "please check the stack trace for this crash"
    tokens = tokenize(text)
    assert keyword_present("crash", tokens, text)
    assert keyword_present("stack trace", tokens, text)
    assert not keyword_present("stack", frozenset(), "stacked traces")
    assert not keyword_present("unit test", tokens, text)


def test_keyword_matcher_counts_distinct_keywords(make_context) -> None:
    """关键字命中数按去重后的关键字计。"""
    ctx = make_context("fix the crash, the crash is bad")
    assert KeywordMatcher(["crash", "fix", "Crash", "bug"]).match(ctx) == 2


def test_file_matcher_applies_exclusions(make_context) -> None:
    """排除模式命中的文件不计分。"""
    ctx = make_context(
        "x",
        active_file="frontend/src/App.tsx",
        open_files=("backend/app.py", "frontend/src/App.tsx", "frontend/src/util.py"),
    )
    matcher = FilePatternMatcher(["*.py"], ["frontend/**"])
    assert matcher.matched_files(ctx.files) == ["backend/app.py"]
    assert matcher.match(ctx) == 1


def test_context_tag_matcher_uses_domains(make_context) -> None:
    """上下文标签与主次领域比对。"""
    ctx = make_context("x", primary_domain="debugging", secondary_domains=frozenset({"backend"}))
    assert ContextTagMatcher(["debugging", "testing", "backend"]).match(ctx) == 2


def test_project_marker_matcher_counts_markers_and_stack(make_context) -> None:
    """项目标记命中数包含标记文件与技术栈标签。"""
    ctx = make_context("x")
    ctx.project_markers = {"go.mod": "module example"}
    ctx.stack_tags = frozenset({"go"})
    assert ProjectMarkerMatcher(["go.mod"], ["go"]).match(ctx) == 2
    assert ProjectMarkerMatcher(["pyproject.toml"], ["python"]).match(ctx) == 0
