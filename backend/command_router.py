"""
Command Router - name -> handler mapping populated once at startup.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from command_errors import UnknownCommandError

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class CommandRouter:
    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            raise ValueError(f"Command already registered: {name}")
        self._handlers[name] = handler

    def commands(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    async def dispatch(self, command: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Run the handler for ``command``; its result or exception passes through untouched."""
        handler = self._handlers.get(command)
        if handler is None:
            logger.warning(f"❓ Unknown command: {command}")
            raise UnknownCommandError(f"Unknown command: {command}", {"command": command})
        logger.debug(f"🧭 Dispatching {command}")
        return await handler(params or {})
