"""Interactive prompt collaborators used by CLI-facing flows."""
from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

import typer


class Prompter(Protocol):
    """Yes/no confirmations and free-text input."""

    def confirm(self, message: str, *, default: bool = False) -> bool:
        ...

    def text(self, message: str, *, default: str | None = None) -> str:
        ...


class TyperPrompter:
    """Prompt on the terminal via Typer."""

    def confirm(self, message: str, *, default: bool = False) -> bool:
        return bool(typer.confirm(message, default=default))

    def text(self, message: str, *, default: str | None = None) -> str:
        return str(typer.prompt(message, default=default))


class StaticPrompter:
    """Answer prompts from a fixed script; used for ``--yes`` and in tests."""

    def __init__(self, *, confirm: bool = True, answers: Iterable[str] = ()) -> None:
        self._confirm = confirm
        self._answers = list(answers)
        self.asked: list[str] = []

    def confirm(self, message: str, *, default: bool = False) -> bool:
        self.asked.append(message)
        return self._confirm

    def text(self, message: str, *, default: str | None = None) -> str:
        self.asked.append(message)
        if self._answers:
            return self._answers.pop(0)
        return default or ""


__all__ = ["Prompter", "StaticPrompter", "TyperPrompter"]
