"""Protocol definitions for collaborators the core drives but does not own."""

from typing import Protocol, Sequence, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class Renderer(Protocol):
    """Terminal screen that displays one session's output.

    The renderer owns keyboard and geometry; it reports keystrokes, pastes
    and resizes back through the supervisor's `on_input`, `on_binary` and
    `on_resize` entry points.
    """

    @property
    def rows(self) -> int:
        """Current viewport height in character cells."""
        ...

    @property
    def cols(self) -> int:
        """Current viewport width in character cells."""
        ...

    def write(self, text: str) -> None:
        """Display decoded session output (may contain escape sequences)."""
        ...

    def dispose(self) -> None:
        """Release the screen. No writes are issued afterwards."""
        ...


@runtime_checkable
class PromptProvider(Protocol):
    """User-interaction capabilities injected into the supervisor.

    Every method returns None when the user cancels.
    """

    async def request_credential(self, prompt: str) -> str | None:
        """Ask for a secret (password) without echoing it."""
        ...

    async def request_text(self, prompt: str, default: str = "") -> str | None:
        """Ask for a line of text, pre-filled with `default`."""
        ...

    async def request_choice(self, prompt: str, options: Sequence[T], labels: Sequence[str]) -> T | None:
        """Ask the user to pick one of `options` (displayed as `labels`)."""
        ...

    def notify(self, message: str) -> None:
        """Show a one-line status or error message."""
        ...
