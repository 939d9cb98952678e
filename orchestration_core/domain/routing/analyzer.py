"""上下文分析器：把原始请求与环境信号转换为结构化 Context。

领域识别、复杂度评分与作用域分类都是输入的纯函数：

- 领域：每个处理器的关键字命中数与文件命中数累加到其首个领域标签，
  计数最高者为主领域，达到主领域计数一半以上者为次领域；
- 复杂度：文件数、领域数、破坏性变更风险与新颖度四个子分的均值，范围 [1, 10]；
- 作用域：复杂度分档与领域数分档取较大者。
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict

from orchestration_core.domain.catalog.store import DescriptorStore
from orchestration_core.domain.enums import ScopeClass
from orchestration_core.domain.errors import InvalidRequest
from orchestration_core.domain.models import Context, RouteRequest, normalize_path, normalize_text, tokenize
from orchestration_core.domain.routing.matchers import FilePatternMatcher, KeywordMatcher, keyword_present
from orchestration_core.domain.routing.stack import detect_stack

logger = logging.getLogger(__name__)

GENERAL_DOMAIN = "general"
NO_OVERRIDE = "none"

RISK_WORDS = (
    "migration",
    "schema",
    "breaking",
    "rewrite",
    "architecture",
    "delete",
    "drop",
    "auth",
    "security",
    "deploy",
    "production",
    "data loss",
)
NOVELTY_WORDS = ("new", "build", "create", "implement", "design", "full-stack", "from scratch", "introduce", "add")
MAINTENANCE_WORDS = ("fix", "tweak", "typo", "rename", "update", "bump", "adjust")

# 顺序即并列时的优先顺序。
ARCHETYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("bug-fix", ("fix", "bug", "crash", "error", "broken", "regression")),
    ("security-audit", ("audit", "vulnerability", "security review", "penetration", "owasp")),
    ("performance", ("slow", "performance", "optimize", "latency", "bottleneck")),
    ("database-change", ("migration", "schema", "index", "database", "table")),
    ("deployment", ("deploy", "release", "rollout", "ship")),
    ("code-review", ("review", "pull request", "code review")),
    ("refactor", ("refactor", "restructure", "cleanup", "clean up", "simplify", "extract")),
    ("new-feature", ("new", "feature", "build", "create", "implement", "add")),
)

MENTION_RE = re.compile(r"@([a-z0-9][a-z0-9_-]*)")


def files_affected_score(file_count: int) -> int:
    if file_count <= 0:
        return 1
    if file_count == 1:
        return 2
    if file_count <= 5:
        return 5
    return 8


def domains_involved_score(domain_count: int) -> int:
    if domain_count <= 1:
        return 2
    if domain_count == 2:
        return 5
    if domain_count == 3:
        return 7
    return 9


def breaking_change_score(risk_hits: int) -> int:
    if risk_hits <= 0:
        return 2
    if risk_hits == 1:
        return 5
    if risk_hits == 2:
        return 7
    return 9


def novelty_score(novelty_hits: int, maintenance_hits: int) -> int:
    if novelty_hits <= 0:
        return 2 if maintenance_hits else 3
    if novelty_hits == 1:
        return 5
    return 8


def _complexity_band(complexity: float) -> int:
    if complexity < 4:
        return 0
    if complexity < 7:
        return 1
    if complexity < 9:
        return 2
    return 3


def _domain_band(domain_count: int) -> int:
    if domain_count <= 1:
        return 0
    if domain_count == 2:
        return 1
    if domain_count == 3:
        return 2
    return 3


_SCOPE_BY_BAND = (ScopeClass.single_file, ScopeClass.feature, ScopeClass.multi_module, ScopeClass.system_wide)


def classify_scope(complexity: float, domain_count: int) -> ScopeClass:
    """复杂度分档与领域数分档取较大者。"""
    return _SCOPE_BY_BAND[max(_complexity_band(complexity), _domain_band(domain_count))]


def _count_hits(words: tuple[str, ...], tokens: frozenset[str], normalized_text: str) -> int:
    return sum(1 for word in words if keyword_present(word, tokens, normalized_text))


def detect_archetype(tokens: frozenset[str], normalized_text: str) -> str | None:
    best: tuple[int, str] | None = None
    for archetype, words in ARCHETYPE_KEYWORDS:
        hits = _count_hits(words, tokens, normalized_text)
        if hits and (best is None or hits > best[0]):
            best = (hits, archetype)
    return best[1] if best else None


class ContextAnalyzer:
    """上下文分析器，无副作用。"""

    def __init__(self, store: DescriptorStore, secondary_ratio: float = 0.5) -> None:
        self._store = store
        self._secondary_ratio = secondary_ratio

    def analyze(self, request: RouteRequest, prior: Context | None = None) -> Context:
        """构建请求上下文；空请求抛出 InvalidRequest。"""
        text = request.request_text if isinstance(request.request_text, str) else ""
        if not text.strip():
            raise InvalidRequest("request text is empty")
        if not request.session_id or not request.session_id.strip():
            raise InvalidRequest("session id is required")

        tokens = tokenize(text)
        normalized = normalize_text(text)
        active_file = normalize_path(request.active_file) if request.active_file else None
        open_files = tuple(normalize_path(item) for item in request.open_files if item and item.strip())
        markers = dict(request.project_markers or {})

        draft = Context(
            session_id=request.session_id,
            request_text=text,
            primary_domain=GENERAL_DOMAIN,
            secondary_domains=frozenset(),
            complexity=1.0,
            scope=ScopeClass.single_file,
            active_file=active_file,
            open_files=open_files,
            project_markers=markers,
            tokens=tokens,
            normalized_text=normalized,
        )
        primary, secondary = self._detect_domains(draft)
        domain_count = 1 + len(secondary)

        novelty = novelty_score(
            _count_hits(NOVELTY_WORDS, tokens, normalized),
            _count_hits(MAINTENANCE_WORDS, tokens, normalized),
        )
        if prior is not None and prior.primary_domain == primary:
            novelty = max(1, novelty - 1)
        sub_scores = (
            files_affected_score(len(draft.files)),
            domains_involved_score(domain_count),
            breaking_change_score(_count_hits(RISK_WORDS, tokens, normalized)),
            novelty,
        )
        complexity = min(10.0, max(1.0, sum(sub_scores) / len(sub_scores)))
        scope = classify_scope(complexity, domain_count)

        ctx = Context(
            session_id=request.session_id,
            request_text=text,
            primary_domain=primary,
            secondary_domains=secondary,
            complexity=complexity,
            scope=scope,
            active_file=active_file,
            open_files=open_files,
            project_markers=markers,
            stack_tags=detect_stack(markers),
            override=self._detect_override(request, normalized),
            archetype=detect_archetype(tokens, normalized),
            tokens=tokens,
            normalized_text=normalized,
        )
        logger.debug(
            "context analyzed",
            extra={
                "event": "context.analyzed",
                "payload_preview": {
                    "primary_domain": primary,
                    "secondary_domains": sorted(secondary),
                    "sub_scores": list(sub_scores),
                    "complexity": complexity,
                    "scope": scope.value,
                    "override": ctx.override,
                    "archetype": ctx.archetype,
                },
            },
        )
        return ctx

    def _detect_domains(self, draft: Context) -> tuple[str, frozenset[str]]:
        counts: dict[str, int] = defaultdict(int)
        for handler in self._store.handlers():
            hits = KeywordMatcher(handler.triggers.keywords).match(draft)
            hits += FilePatternMatcher(handler.triggers.file_patterns, handler.exclusions).match(draft)
            if hits:
                counts[handler.home_domain] += hits
        if not counts:
            return GENERAL_DOMAIN, frozenset()
        primary = min(counts, key=lambda domain: (-counts[domain], domain))
        threshold = counts[primary] * self._secondary_ratio
        secondary = frozenset(
            domain for domain, count in counts.items() if domain != primary and count >= threshold
        )
        return primary, secondary

    def _detect_override(self, request: RouteRequest, normalized: str) -> str | None:
        """显式字段优先；字面量 none 关闭覆盖；否则识别 @提及与 use the X 句式。"""
        if request.explicit_override is not None:
            value = request.explicit_override.strip()
            if value.lower() == NO_OVERRIDE:
                return None
            if value:
                return value

        for mention in MENTION_RE.findall(normalized):
            if self._store.has_handler(mention):
                return mention

        best: tuple[str, str] | None = None
        for label, handler_id in self._store.handler_labels().items():
            pattern = rf"\buse (?:the |a |an )?{re.escape(label)}(?![a-z0-9])"
            if re.search(pattern, normalized) and (best is None or len(label) > len(best[0])):
                best = (label, handler_id)
        return best[1] if best else None
