"""
Tool registry for `tool_call` steps.

Tools are domain operations (create a post, list a timeline, ...) the engine
treats as opaque: a name, an auth context, and a dict of input.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional
import inspect
import logging

from ..schemas.execution import AuthContext


logger = logging.getLogger(__name__)


ToolFunction = Callable[[Optional[AuthContext], Dict[str, Any]], Any]


class ToolNotFoundError(LookupError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Tool "{name}" is not registered')


class ToolRegistry:
    def __init__(self):
        self._tools: Dict[str, ToolFunction] = {}

    def register(self, name: str, fn: ToolFunction) -> None:
        if not name:
            raise ValueError("Tool name is required")
        if name in self._tools:
            logger.warning(f"Replacing tool {name}")
        self._tools[name] = fn

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return sorted(self._tools)

    async def invoke(self, name: str, auth: Optional[AuthContext], input: Dict[str, Any]) -> Any:
        """Call a tool; sync tools are called directly, async ones awaited."""
        fn = self._tools.get(name)
        if fn is None:
            raise ToolNotFoundError(name)
        result = fn(auth, input)
        if inspect.isawaitable(result):
            result = await result
        return result
