"""
Marking scheme parser and validator.

Turns block-structured scheme text into an immutable Scheme. Parsing is
pure: nothing is read from disk (except by load_scheme) and no command is
run, so a scheme can be checked before any marking starts.

Example scheme::

    [scheme]
    title = COMP1511 final exam
    combine = capped
    cap = 100

    [criterion compiles]
    weight = 10
    command = dcc -o prog {submission}/prog.c
    matcher = exit:0

    [criterion tests]
    weight = 90
    command = ./autotest.sh {submission} {args}
    args = --quiet
    matcher = match:Passed (\\d+) tests/45
    timeout = 60
"""

import math
import re
from dataclasses import dataclass, field
from pathlib import Path

from .config import (
    COMMAND_PLACEHOLDERS,
    CRITERION_NAME_PATTERN,
    DEFAULT_SCHEME_TOTAL,
    PLACEHOLDER_PATTERN,
    WEIGHT_TOLERANCE,
)
from .models import Criterion, ExactMatcher, ExitMatcher, Matcher, PatternMatcher, Scheme

HEADER_PATTERN = re.compile(r"^\[\s*([A-Za-z]+)(?:\s+(.*?))?\s*\]$")
EXIT_RANGE_PATTERN = re.compile(r"^(\d+)\s*-\s*(\d+)$")

SCHEME_KEYS = ("title", "total", "normalized", "combine", "cap", "allow_skip")
CRITERION_KEYS = ("weight", "command", "args", "matcher", "timeout")
REQUIRED_CRITERION_KEYS = ("weight", "command", "matcher")

TRUE_WORDS = ("yes", "true", "on", "1")
FALSE_WORDS = ("no", "false", "off", "0")


class SchemeError(ValueError):
    """Base class for malformed or invalid marking schemes."""


class SchemeParseError(SchemeError):
    """Scheme text is syntactically malformed."""

    def __init__(self, line: int, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"line {line}: {reason}")


class SchemeValidationError(SchemeError):
    """Scheme is well formed but violates a semantic rule."""

    def __init__(self, criterion: str | None, reason: str) -> None:
        self.criterion = criterion
        self.reason = reason
        where = f"criterion '{criterion}'" if criterion else "scheme"
        super().__init__(f"{where}: {reason}")


@dataclass
class _Block:
    kind: str
    line: int
    name: str = ""
    values: dict[str, tuple[int, str]] = field(default_factory=dict)


def load_scheme(scheme_path: Path) -> Scheme:
    """
    Read and parse a scheme file.

    Raises:
        FileNotFoundError: If the scheme file doesn't exist.
        SchemeError: If the scheme is malformed or invalid.
    """
    if not scheme_path.exists():
        raise FileNotFoundError(f"Scheme not found: {scheme_path}")

    return parse_scheme(scheme_path.read_text(encoding="utf-8"))


def parse_scheme(text: str) -> Scheme:
    """
    Parse scheme text into a validated Scheme.

    Args:
        text: Scheme file contents.

    Returns:
        The immutable Scheme.

    Raises:
        SchemeParseError: On malformed syntax, with the offending line number.
        SchemeValidationError: On semantic violations, with the criterion name.
    """
    header, criterion_blocks = _split_blocks(text)
    options = _scheme_options(header)

    criteria: list[Criterion] = []
    seen: set[str] = set()
    for block in criterion_blocks:
        if block.name in seen:
            raise SchemeValidationError(block.name, "duplicate criterion name")
        seen.add(block.name)
        criteria.append(_build_criterion(block))

    if not criteria:
        raise SchemeValidationError(None, "scheme declares no criteria")

    scheme = Scheme(criteria=tuple(criteria), **options)
    _validate_scheme(scheme)
    return scheme


def _split_blocks(text: str) -> tuple[_Block | None, list[_Block]]:
    """Group non-comment lines into [scheme] and [criterion NAME] blocks."""
    header: _Block | None = None
    criteria: list[_Block] = []
    current: _Block | None = None
    name_pattern = re.compile(CRITERION_NAME_PATTERN)

    for number, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith("["):
            match = HEADER_PATTERN.match(line)
            if not match:
                raise SchemeParseError(number, f"malformed block header: {line}")
            kind = match.group(1).lower()
            name = (match.group(2) or "").strip()

            if kind == "scheme":
                if name:
                    raise SchemeParseError(number, "[scheme] takes no name")
                if header is not None:
                    raise SchemeParseError(number, "repeated [scheme] block")
                if criteria:
                    raise SchemeParseError(number, "[scheme] must come before every criterion")
                header = current = _Block(kind, number)
            elif kind == "criterion":
                if not name:
                    raise SchemeParseError(number, "criterion block needs a name")
                if not name_pattern.match(name):
                    raise SchemeParseError(number, f"invalid criterion name: {name!r}")
                current = _Block(kind, number, name)
                criteria.append(current)
            else:
                raise SchemeParseError(number, f"unknown block type: {kind}")
            continue

        if current is None:
            raise SchemeParseError(number, "expected a [scheme] or [criterion NAME] header")
        if "=" not in line:
            raise SchemeParseError(number, f"expected 'key = value', got: {line}")

        key, _, value = line.partition("=")
        key = key.strip().lower()
        allowed = SCHEME_KEYS if current.kind == "scheme" else CRITERION_KEYS
        if key not in allowed:
            raise SchemeParseError(number, f"unknown key '{key}' in [{current.kind}] block")
        if key in current.values:
            raise SchemeParseError(number, f"duplicate key '{key}'")
        current.values[key] = (number, value.strip())

    return header, criteria


def _scheme_options(header: _Block | None) -> dict:
    if header is None:
        return {}

    values = header.values
    options: dict = {}
    if "title" in values:
        options["title"] = values["title"][1]
    if "total" in values:
        options["total"] = _parse_number(*values["total"], "total")
    if "cap" in values:
        options["cap"] = _parse_number(*values["cap"], "cap")
    if "normalized" in values:
        options["normalized"] = _parse_bool(*values["normalized"], "normalized")
    if "allow_skip" in values:
        options["allow_skip"] = _parse_bool(*values["allow_skip"], "allow_skip")
    if "combine" in values:
        combine = values["combine"][1].lower()
        if combine not in ("sum", "capped"):
            raise SchemeValidationError(None, f"unknown combination rule: {combine!r}")
        options["combine"] = combine

    if options.get("total", DEFAULT_SCHEME_TOTAL) <= 0:
        raise SchemeValidationError(None, "total must be positive")
    cap = options.get("cap")
    if options.get("combine") == "capped" and (cap is None or cap <= 0):
        raise SchemeValidationError(None, "capped scheme needs a positive cap")
    if options.get("combine", "sum") == "sum" and cap is not None:
        raise SchemeValidationError(None, "cap is only allowed with 'combine = capped'")
    return options


def _build_criterion(block: _Block) -> Criterion:
    values = block.values
    for key in REQUIRED_CRITERION_KEYS:
        if key not in values:
            raise SchemeValidationError(block.name, f"missing '{key}'")

    weight = _parse_number(*values["weight"], "weight")
    if weight < 0:
        raise SchemeValidationError(block.name, "weight must not be negative")

    command = values["command"][1]
    if not command:
        raise SchemeValidationError(block.name, "command is empty")
    for placeholder in re.findall(PLACEHOLDER_PATTERN, command):
        if placeholder not in COMMAND_PLACEHOLDERS:
            raise SchemeValidationError(block.name, f"unknown placeholder {{{placeholder}}}")

    timeout = None
    if "timeout" in values:
        timeout = _parse_number(*values["timeout"], "timeout")
        if timeout <= 0:
            raise SchemeValidationError(block.name, "timeout must be positive")

    return Criterion(
        name=block.name,
        weight=weight,
        command=command,
        args=values.get("args", (0, ""))[1],
        matcher=parse_matcher(block.name, values["matcher"][1]),
        timeout=timeout,
    )


def parse_matcher(criterion: str, directive: str) -> Matcher:
    """
    Parse a matcher directive: exit:<set>, exact:<string> or match:<pattern>/<max>.

    Raises:
        SchemeValidationError: If the directive is unknown or malformed.
    """
    kind, sep, body = directive.partition(":")
    kind = kind.strip().lower()
    if not sep:
        raise SchemeValidationError(criterion, f"matcher needs a kind prefix: {directive!r}")

    if kind == "exit":
        return ExitMatcher(accepted=_parse_exit_set(criterion, body))

    if kind == "exact":
        return ExactMatcher(expected=body.strip())

    if kind == "match":
        pattern, slash, maximum_text = body.rpartition("/")
        if not slash or not pattern:
            raise SchemeValidationError(criterion, "expected match:<pattern>/<max>")
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            raise SchemeValidationError(criterion, f"invalid pattern: {e}") from e
        if compiled.groups != 1:
            raise SchemeValidationError(
                criterion, f"pattern must have exactly one capture group, found {compiled.groups}"
            )
        try:
            maximum = float(maximum_text)
        except ValueError:
            raise SchemeValidationError(criterion, f"invalid maximum: {maximum_text!r}") from None
        if not math.isfinite(maximum) or maximum <= 0:
            raise SchemeValidationError(criterion, "maximum must be a positive number")
        return PatternMatcher(pattern=pattern, maximum=maximum)

    raise SchemeValidationError(criterion, f"unknown matcher kind: {kind!r}")


def _parse_exit_set(criterion: str, body: str) -> frozenset[int]:
    codes: set[int] = set()
    for item in body.split(","):
        item = item.strip()
        if item.isdigit():
            codes.add(int(item))
            continue
        match = EXIT_RANGE_PATTERN.match(item)
        if not match:
            raise SchemeValidationError(criterion, f"invalid exit code set: {body.strip()!r}")
        low, high = int(match.group(1)), int(match.group(2))
        if low > high:
            raise SchemeValidationError(criterion, f"empty exit code range: {item}")
        codes.update(range(low, high + 1))
    return frozenset(codes)


def _parse_number(line: int, value: str, key: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise SchemeParseError(line, f"'{key}' must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise SchemeParseError(line, f"'{key}' must be finite")
    return number


def _parse_bool(line: int, value: str, key: str) -> bool:
    word = value.lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise SchemeParseError(line, f"'{key}' must be yes or no, got {value!r}")


def _validate_scheme(scheme: Scheme) -> None:
    if scheme.normalized and abs(scheme.weight_sum - scheme.total) > WEIGHT_TOLERANCE:
        raise SchemeValidationError(
            None,
            f"weights sum to {format_number(scheme.weight_sum)}, expected "
            f"{format_number(scheme.total)} (declare 'normalized = no' to allow this)",
        )


def format_number(value: float) -> str:
    """Format a score or weight without a trailing '.0'."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_matcher(matcher: Matcher) -> str:
    if isinstance(matcher, ExitMatcher):
        return "exit:" + ",".join(str(code) for code in sorted(matcher.accepted))
    if isinstance(matcher, ExactMatcher):
        return f"exact:{matcher.expected}"
    return f"match:{matcher.pattern}/{format_number(matcher.maximum)}"


def format_scheme(scheme: Scheme) -> str:
    """
    Serialize a Scheme back into scheme text.

    The text is canonical rather than a copy of the original: parsing it
    yields a Scheme equal to the one given.
    """
    lines = ["[scheme]"]
    if scheme.title:
        lines.append(f"title = {scheme.title}")
    lines.append(f"total = {format_number(scheme.total)}")
    lines.append(f"normalized = {'yes' if scheme.normalized else 'no'}")
    lines.append(f"combine = {scheme.combine}")
    if scheme.cap is not None:
        lines.append(f"cap = {format_number(scheme.cap)}")
    lines.append(f"allow_skip = {'yes' if scheme.allow_skip else 'no'}")

    for criterion in scheme.criteria:
        lines.append("")
        lines.append(f"[criterion {criterion.name}]")
        lines.append(f"weight = {format_number(criterion.weight)}")
        lines.append(f"command = {criterion.command}")
        if criterion.args:
            lines.append(f"args = {criterion.args}")
        lines.append(f"matcher = {format_matcher(criterion.matcher)}")
        if criterion.timeout is not None:
            lines.append(f"timeout = {format_number(criterion.timeout)}")

    return "\n".join(lines) + "\n"


def describe_scheme(scheme: Scheme) -> str:
    """
    Summarize a scheme for display.

    Args:
        scheme: Parsed Scheme.

    Returns:
        Multi-line summary, one line per criterion.
    """
    title = scheme.title or "Marking scheme"
    rule = scheme.combine
    if scheme.combine == "capped":
        rule += f" at {format_number(scheme.cap)}"

    lines = [
        f"{title}: {len(scheme.criteria)} criteria, max {format_number(scheme.max_total)} ({rule})",
    ]
    for criterion in scheme.criteria:
        timeout = f", timeout {format_number(criterion.timeout)}s" if criterion.timeout else ""
        lines.append(
            f"  - {criterion.name} ({format_number(criterion.weight)} pts): "
            f"{format_matcher(criterion.matcher)}{timeout}"
        )
    return "\n".join(lines)
