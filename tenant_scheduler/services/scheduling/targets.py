"""
Target function registry.

Jobs name the work they run by a plain string. The host application registers
an async handler for each name up front, so the set of valid targets is known
before any job referencing it is stored.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, List

from tenant_scheduler.utils.logger import get_logger

from .core.errors import ExecutionFailure
from .core.models import TARGET_NAME_PATTERN, ExecutionContext

logger = get_logger(__name__)

TargetHandler = Callable[[Dict[str, Any], ExecutionContext], Awaitable[Any]]


class TargetFunctionRegistry:
    """
    Maps target names to async handlers.

    Handlers are called as ``await handler(params, context)`` and must be
    cancellable: the execution engine cancels the handler's task on timeout.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, TargetHandler] = {}

    def register(self, name: str, handler: TargetHandler) -> TargetHandler:
        """Register ``handler`` under ``name``"""
        if not isinstance(name, str) or not TARGET_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid target function name: {name!r}")
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Target '{name}' must be an async function")
        if name in self._handlers:
            raise ValueError(f"Target function '{name}' is already registered")

        self._handlers[name] = handler
        logger.info("Registered target function", target_function=name)
        return handler

    def target(self, name: str) -> Callable[[TargetHandler], TargetHandler]:
        """
        Decorator form of ``register``.

        Usage:
            @targets.target("send_digest")
            async def send_digest(params, context):
                ...
        """

        def decorator(handler: TargetHandler) -> TargetHandler:
            return self.register(name, handler)

        return decorator

    def unregister(self, name: str) -> bool:
        return self._handlers.pop(name, None) is not None

    def has(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> List[str]:
        return sorted(self._handlers)

    async def invoke(
        self, name: str, params: Dict[str, Any], context: ExecutionContext
    ) -> Any:
        """Await the handler registered under ``name``"""
        handler = self._handlers.get(name)
        if handler is None:
            raise ExecutionFailure(f"Target function '{name}' is not registered")
        return await handler(params, context)

    def __len__(self) -> int:
        return len(self._handlers)
