"""Command registration and dispatch keyed by name."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Exit code plus machine and human renderings of one command run."""

    exit_code: int
    payload: dict[str, object]
    text: str


CommandHandler = Callable[[dict[str, object]], CommandResult]


@dataclass(slots=True, frozen=True)
class CommandDispatchError(Exception):
    """Raised when a command name has no handler."""

    code: str
    message: str


@dataclass(slots=True)
class CommandRegistry:
    """In-memory command registry preserving insertion order."""

    _handlers: dict[str, CommandHandler] = field(default_factory=dict)

    def register(self, name: str, handler: CommandHandler) -> None:
        """Bind a handler to a command name, replacing any earlier binding."""
        self._handlers[name] = handler

    def get(self, name: str) -> CommandHandler | None:
        """Look up the handler bound to `name`."""
        return self._handlers.get(name)

    def names(self) -> tuple[str, ...]:
        """Return registered command names in insertion order."""
        return tuple(self._handlers)

    def dispatch(self, name: str, arguments: dict[str, object]) -> CommandResult:
        """Dispatch to a registered command by name."""
        handler = self.get(name)
        if handler is None:
            raise CommandDispatchError(code="UNKNOWN_COMMAND", message=f"Unknown command: {name}")
        return handler(arguments)
