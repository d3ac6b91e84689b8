"""Command registry and built-in command handlers."""

from .builtin import CommandServices, error_result, register_builtin_commands
from .registry import CommandDispatchError, CommandHandler, CommandRegistry, CommandResult

__all__ = [
    "CommandDispatchError",
    "CommandHandler",
    "CommandRegistry",
    "CommandResult",
    "CommandServices",
    "error_result",
    "register_builtin_commands",
]
