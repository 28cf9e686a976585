"""Format templates compiled once and rendered every cycle.

Grammar is Python's format-string grammar restricted to named integer
placeholders: "{min}-{max} ({average})", "{average:>5}RPM", "{{literal}}".
"""

from __future__ import annotations

import dataclasses
import string
from collections.abc import Iterable, Mapping

DEFAULT_PLACEHOLDERS = ("average", "min", "max")


class ConfigError(ValueError):
    """Block configuration is invalid; the block cannot be constructed."""


@dataclasses.dataclass(frozen=True, slots=True)
class Literal:
    text: str


@dataclasses.dataclass(frozen=True, slots=True)
class Placeholder:
    name: str
    spec: str = ""


Token = Literal | Placeholder


@dataclasses.dataclass(frozen=True, slots=True)
class Template:
    """Compiled render plan: literal spans and placeholder tokens, in order."""

    source: str
    tokens: tuple[Token, ...]

    @classmethod
    def compile(
        cls,
        fmt: str,
        placeholders: Iterable[str] = DEFAULT_PLACEHOLDERS,
    ) -> Template:
        """Compile fmt. Raises ConfigError on any malformed or unknown field."""
        known = frozenset(placeholders)
        try:
            parsed = list(string.Formatter().parse(fmt))
        except ValueError as e:
            raise ConfigError("Invalid format %r: %s" % (fmt, e)) from e

        tokens: list[Token] = []
        for literal, field, spec, conversion in parsed:
            if literal:
                tokens.append(Literal(literal))
            if field is None:
                continue
            if conversion is not None:
                raise ConfigError(
                    "Invalid format %r: conversion !%s not supported"
                    % (fmt, conversion)
                )
            if field not in known:
                raise ConfigError(
                    "Invalid format %r: unknown placeholder {%s} (expected one of %s)"
                    % (fmt, field, ", ".join("{%s}" % p for p in sorted(known)))
                )
            spec = spec or ""
            try:
                _ = format(0, spec)
            except ValueError as e:
                raise ConfigError(
                    "Invalid format %r: bad spec for {%s}: %s" % (fmt, field, e)
                ) from e
            tokens.append(Placeholder(field, spec))
        return cls(source=fmt, tokens=tuple(tokens))

    @property
    def placeholders(self) -> frozenset[str]:
        return frozenset(t.name for t in self.tokens if isinstance(t, Placeholder))

    def render(self, values: Mapping[str, int]) -> str:
        """Substitute values; a missing placeholder value raises KeyError."""
        parts: list[str] = []
        for token in self.tokens:
            if isinstance(token, Literal):
                parts.append(token.text)
            else:
                parts.append(format(values[token.name], token.spec))
        return "".join(parts)
