"""Interactive prompts for strings, choices and confirmations."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from slipgate.readline import read_line

_INTEGER = re.compile(r"[+-]?\d+")


class PromptError(ValueError):
    """The user's answer could not be accepted."""


@dataclass(frozen=True)
class SelectOption:
    """One choice in a selection list."""

    label: str
    value: str


@dataclass(frozen=True)
class InputSpec:
    """Describes one value an action needs from the user."""

    key: str
    label: str
    default: str = ""
    required: bool = False
    options: tuple[SelectOption, ...] = ()
    cli_only: bool = False
    depends_on: str = ""
    depends_on_values: tuple[str, ...] = ()


def sanitize(text: str) -> str:
    """Strip non-printable and non-ASCII characters."""
    return "".join(ch for ch in text if 0x20 <= ord(ch) < 0x7F)


def _parse_int(text: str) -> int | None:
    return int(text) if _INTEGER.fullmatch(text) else None


def ask_string(label: str, default: str = "") -> str:
    """Ask for a string; an empty answer gives ``default``."""
    prompt = f"  {label} [{default}]: " if default else f"  {label}: "
    line = sanitize(read_line(prompt).strip())
    return line or default


def _show_options(label: str, options: Sequence[SelectOption]) -> None:
    print(f"\n  {label}:")
    for number, option in enumerate(options, start=1):
        print(f"    {number}) {option.label}")


def select(label: str, options: Sequence[SelectOption]) -> str:
    """Ask the user to pick one option by number or value; return its value."""
    _show_options(label, options)
    default_label = options[0].label if options else ""
    line = sanitize(read_line(f"  Choice [{default_label}]: ").strip())

    if not line and options:
        return options[0].value

    number = _parse_int(line)
    if number is not None and 1 <= number <= len(options):
        return options[number - 1].value

    for option in options:
        if line.casefold() == option.value.casefold():
            return option.value

    raise PromptError(f"invalid choice: {line}")


def multi_select(label: str, options: Sequence[SelectOption]) -> list[str]:
    """Ask for a comma-separated set of options; return their values in order."""
    _show_options(label, options)
    all_index = len(options) + 1
    print(f"    {all_index}) All")
    line = sanitize(read_line("  Choice (comma-separated, e.g. 1,3,4): ").strip())

    every = [option.value for option in options]
    chosen: list[str] = []
    for part in line.split(","):
        part = part.strip()
        if part.casefold() == "all":
            return every
        number = _parse_int(part)
        if number is None:
            continue
        if number == all_index:
            return every
        if 1 <= number <= len(options):
            value = options[number - 1].value
            if value not in chosen:
                chosen.append(value)
    return chosen


def confirm(message: str) -> bool:
    """Ask a yes/no question that defaults to no."""
    line = read_line(f"  {message} [y/N]: ").lower().strip()
    return line in ("y", "yes")


def confirm_yes(message: str) -> bool:
    """Ask a yes/no question that defaults to yes."""
    line = read_line(f"  {message} [Y/n]: ").lower().strip()
    return line not in ("n", "no")


def collect_inputs(
    inputs: Iterable[InputSpec], existing: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Prompt for every needed input not already given; return all values."""
    result = dict(existing or {})
    for spec in inputs:
        if result.get(spec.key):
            continue
        if spec.cli_only:
            continue
        if spec.depends_on:
            dependency = result.get(spec.depends_on, "")
            if not dependency:
                continue
            if spec.depends_on_values and dependency not in spec.depends_on_values:
                continue

        if spec.options:
            result[spec.key] = select(spec.label, spec.options)
        else:
            value = ask_string(spec.label, spec.default)
            if spec.required and not value:
                raise PromptError(f"{spec.label} is required")
            result[spec.key] = value
    return result