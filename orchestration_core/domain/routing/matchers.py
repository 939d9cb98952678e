"""触发器匹配策略：关键字、文件通配、情境标签与项目标记各自独立计数。"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from functools import lru_cache
from posixpath import basename

from orchestration_core.domain.models import Context, TriggerSet, normalize_path


@dataclass(frozen=True, slots=True)
class GlobPattern:
    """编译后的文件通配模式；不含 / 的模式只匹配文件名。"""
    source: str
    regex: re.Pattern[str]
    anchored: bool

    def matches(self, path: str) -> bool:
        target = normalize_path(path)
        if not self.anchored:
            target = basename(target)
        return self.regex.fullmatch(target) is not None


@lru_cache(maxsize=1024)
def compile_glob(pattern: str) -> GlobPattern:
    """把通配模式翻译为正则：**/ 匹配零或多级目录，* 与 ? 不跨越 /。"""
    source = normalize_path(pattern)
    parts: list[str] = []
    i = 0
    while i < len(source):
        if source.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif source.startswith("**", i):
            parts.append(".*")
            i += 2
        elif source[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif source[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(source[i]))
            i += 1
    return GlobPattern(source=source, regex=re.compile("".join(parts)), anchored="/" in source)


def match_any(path: str, patterns: Iterable[str]) -> bool:
    return any(compile_glob(pattern).matches(path) for pattern in patterns)


@lru_cache(maxsize=2048)
def _phrase_regex(phrase: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![a-z0-9]){re.escape(phrase)}(?![a-z0-9])")


def keyword_present(keyword: str, tokens: frozenset[str], normalized_text: str) -> bool:
    """单词关键字按词元匹配，多词关键字按规范化文本中的短语匹配。"""
    if " " in keyword:
        return _phrase_regex(keyword).search(normalized_text) is not None
    return keyword in tokens


class Matcher(ABC):
    """匹配策略基类：对一个上下文返回非负整数命中数。"""
    kind: str

    @abstractmethod
    def match(self, ctx: Context) -> int:
        """返回命中次数。"""


class KeywordMatcher(Matcher):
    kind = "keyword"

    def __init__(self, keywords: Sequence[str]) -> None:
        self._keywords = tuple(dict.fromkeys(item.lower() for item in keywords))

    def matched(self, ctx: Context) -> list[str]:
        return [kw for kw in self._keywords if keyword_present(kw, ctx.tokens, ctx.normalized_text)]

    def match(self, ctx: Context) -> int:
        return len(self.matched(ctx))


class FilePatternMatcher(Matcher):
    """统计活动/打开文件中命中任一模式且未被排除的文件数。"""
    kind = "file"

    def __init__(self, patterns: Sequence[str], exclusions: Sequence[str] = ()) -> None:
        self._patterns = tuple(patterns)
        self._exclusions = tuple(exclusions)

    def matched_files(self, files: Iterable[str]) -> list[str]:
        if not self._patterns:
            return []
        return [
            path
            for path in files
            if match_any(path, self._patterns) and not match_any(path, self._exclusions)
        ]

    def match(self, ctx: Context) -> int:
        return len(self.matched_files(ctx.files))


class ContextTagMatcher(Matcher):
    kind = "context"

    def __init__(self, contexts: Sequence[str]) -> None:
        self._contexts = frozenset(item.lower() for item in contexts)

    def match(self, ctx: Context) -> int:
        return len(self._contexts & ctx.tags)


class ProjectMarkerMatcher(Matcher):
    """项目标记层：标记文件存在性加技术栈标签命中数。"""
    kind = "marker"

    def __init__(self, markers: Sequence[str], stack_contexts: Sequence[str] = ()) -> None:
        self._markers = frozenset(normalize_path(item) for item in markers)
        self._stack_contexts = frozenset(item.lower() for item in stack_contexts)

    def match(self, ctx: Context) -> int:
        present = {normalize_path(name) for name in ctx.project_markers}
        return len(self._markers & present) + len(self._stack_contexts & ctx.stack_tags)


def handler_matchers(triggers: TriggerSet, exclusions: Sequence[str] = ()) -> dict[str, Matcher]:
    """按触发器构造处理器评分使用的三类匹配器。"""
    return {
        KeywordMatcher.kind: KeywordMatcher(triggers.keywords),
        FilePatternMatcher.kind: FilePatternMatcher(triggers.file_patterns, exclusions),
        ContextTagMatcher.kind: ContextTagMatcher(triggers.contexts),
    }
