"""技术栈识别：根据项目标记文件及其内容片段推断栈标签。"""

from __future__ import annotations

from collections.abc import Mapping

from orchestration_core.domain.models import normalize_path

# (标记文件, 内容片段或 None 表示仅需存在, 产出的标签)
_STACK_RULES: tuple[tuple[str, str | None, tuple[str, ...]], ...] = (
    ("package.json", None, ("node",)),
    ("package.json", '"next"', ("nextjs", "react")),
    ("package.json", '"react"', ("react",)),
    ("package.json", '"vue"', ("vue",)),
    ("package.json", '"typescript"', ("typescript",)),
    ("package.json", '"express"', ("express",)),
    ("package.json", '"fastify"', ("fastify",)),
    ("tsconfig.json", None, ("typescript",)),
    ("composer.json", None, ("php",)),
    ("composer.json", '"laravel/framework"', ("laravel",)),
    ("composer.json", "inertiajs", ("inertia",)),
    ("requirements.txt", None, ("python",)),
    ("requirements.txt", "fastapi", ("fastapi",)),
    ("requirements.txt", "django", ("django",)),
    ("pyproject.toml", None, ("python",)),
    ("pyproject.toml", "fastapi", ("fastapi",)),
    ("pyproject.toml", "django", ("django",)),
    ("go.mod", None, ("go",)),
    ("Cargo.toml", None, ("rust",)),
    ("pubspec.yaml", None, ("flutter",)),
    ("ios/Podfile", None, ("react-native",)),
    ("android/build.gradle", None, ("react-native",)),
    ("prisma/schema.prisma", None, ("prisma",)),
)


def detect_stack(markers: Mapping[str, str]) -> frozenset[str]:
    """返回命中的栈标签集合；内容片段匹配大小写不敏感。"""
    normalized = {normalize_path(name): (content or "").lower() for name, content in markers.items()}
    tags: set[str] = set()
    for marker, fragment, produced in _STACK_RULES:
        if marker not in normalized:
            continue
        if fragment is None or fragment.lower() in normalized[marker]:
            tags.update(produced)
    return frozenset(tags)
