"""领域异常定义：请求校验、描述符配置、依赖环、无匹配与步骤失败。"""

from __future__ import annotations

from collections.abc import Sequence


class OrchestrationError(Exception):
    """编排核心异常基类。"""


class InvalidRequest(OrchestrationError):
    """请求为空或格式非法，不重试，直接返回调用方。"""


class ConfigurationError(OrchestrationError):
    """描述符数据非法，在加载阶段抛出。"""

    def __init__(self, message: str, *, identifiers: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.identifiers = tuple(identifiers)


class DependencyCycleError(OrchestrationError):
    """能力配置依赖展开未收敛或存在环。"""

    def __init__(self, chain: Sequence[str], message: str | None = None) -> None:
        self.chain = tuple(chain)
        super().__init__(message or f"profile dependency cycle: {' -> '.join(self.chain)}")


class NoMatchError(OrchestrationError):
    """过滤后没有任何处理器得分，调用方需自行回退。"""

    def __init__(self, message: str = "no handler matched the request", *, dropped: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.dropped = tuple(dropped)


class StepFailure(OrchestrationError):
    """流水线步骤执行失败或超时。"""

    def __init__(self, step_id: str, message: str, *, handler_id: str | None = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.handler_id = handler_id
        self.timed_out = timed_out
