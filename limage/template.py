"""Placeholder rendering for configured command-line arguments."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Sequence
import re


_PLACEHOLDER_PATTERN = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class TemplateError(ValueError):
    """Raised when an argument template references an unknown placeholder."""


def extract_placeholders(arguments: Iterable[str]) -> set[str]:
    """Collect every ``{name}`` placeholder referenced within *arguments*."""

    placeholders: set[str] = set()
    for argument in arguments:
        for match in _PLACEHOLDER_PATTERN.finditer(argument):
            placeholders.add(match.group(1))
    return placeholders


def validate_placeholders(arguments: Iterable[str], allowed: Iterable[str]) -> None:
    """Raise :class:`TemplateError` if *arguments* use a name outside *allowed*."""

    allowed_set = set(allowed)
    unknown = sorted(extract_placeholders(arguments) - allowed_set)
    if unknown:
        supported = ", ".join("{" + name + "}" for name in sorted(allowed_set)) or "<none>"
        raise TemplateError(
            f"Unknown placeholder(s): {', '.join('{' + name + '}' for name in unknown)}. Supported: {supported}"
        )


@dataclass(frozen=True, slots=True)
class CommandTemplate:
    """An ordered argument list whose entries may contain ``{name}`` tokens."""

    arguments: tuple[str, ...]

    @classmethod
    def of(cls, arguments: Sequence[str]) -> "CommandTemplate":
        return cls(tuple(arguments))

    def placeholders(self) -> set[str]:
        return extract_placeholders(self.arguments)

    def render(self, bindings: Mapping[str, object]) -> List[str]:
        """Return the argument vector with every bound placeholder replaced.

        Substitution is a single pass over each argument, so a bound value that
        itself looks like a placeholder is emitted literally. Tokens with no
        binding are left untouched.
        """

        values = {name: str(value) for name, value in bindings.items()}

        def replacement(match: re.Match[str]) -> str:
            return values.get(match.group(1), match.group(0))

        rendered: List[str] = []
        for argument in self.arguments:
            if not _PLACEHOLDER_PATTERN.search(argument):
                rendered.append(argument)
                continue
            rendered.append(_PLACEHOLDER_PATTERN.sub(replacement, argument))
        return rendered


def render_arguments(arguments: Sequence[str], bindings: Mapping[str, object]) -> List[str]:
    """Functional shorthand for ``CommandTemplate.of(arguments).render(bindings)``."""

    return CommandTemplate.of(arguments).render(bindings)


__all__ = [
    "CommandTemplate",
    "TemplateError",
    "extract_placeholders",
    "render_arguments",
    "validate_placeholders",
]
