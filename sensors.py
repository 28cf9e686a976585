"""lm-sensors query and JSON parsing for fan readings.

`query_sensors()` runs `sensors -j` and never raises on process failure;
`read_sensor_tree()` turns its result into chip -> input -> InputValue.
"""

from __future__ import annotations

import dataclasses
import json
import math
import subprocess
from typing import Callable

SENSORS_CMD = "sensors"
JSON_FLAG = "-j"


class ParseError(ValueError):
    """Sensor output could not be interpreted as chip -> input mapping."""


class SensorsCommandError(ParseError):
    """The sensors command itself failed, so there is no output to parse."""


@dataclasses.dataclass(frozen=True, slots=True)
class QueryResult:
    """Outcome of one `sensors` invocation."""

    text: str
    error: str | None = None

    @classmethod
    def ok(cls, stdout: str) -> QueryResult:
        return cls(text=stdout)

    @classmethod
    def failed(cls, message: str) -> QueryResult:
        # The message doubles as text, which will never parse as JSON.
        return cls(text=message, error=message)

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclasses.dataclass(frozen=True, slots=True)
class Metrics:
    """Input value that is a flat metric name -> number mapping."""

    readings: dict[str, float]


@dataclasses.dataclass(frozen=True, slots=True)
class Unparsed:
    """Input value with any other shape (e.g. the "Adapter" string)."""

    raw: object


InputValue = Metrics | Unparsed
SensorTree = dict[str, dict[str, InputValue]]
Query = Callable[[str | None], QueryResult]


def sensors_args(chip: str | None = None) -> list[str]:
    """Build the sensors argv: JSON flag first, optional chip after."""
    args = [SENSORS_CMD, JSON_FLAG]
    if chip is not None:
        args.append(chip)
    return args


def query_sensors(chip: str | None = None) -> QueryResult:
    """Run `sensors -j [chip]`. Failures are returned, not raised.

    No timeout is applied; a hung sensors binary blocks the caller.
    """
    cmd = sensors_args(chip)
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
    except OSError as e:
        return QueryResult.failed(str(e))
    if r.returncode != 0:
        detail = r.stderr.strip()
        msg = "%s exited with status %d" % (" ".join(cmd), r.returncode)
        return QueryResult.failed("%s: %s" % (msg, detail) if detail else msg)
    return QueryResult.ok(r.stdout.strip())


def _is_number(value: object) -> bool:
    # JSON true/false decode to bool, which is an int subclass.
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def resolve_input(value: object) -> InputValue:
    """Interpret one input's JSON value as Metrics, or Unparsed if it isn't."""
    if not isinstance(value, dict):
        return Unparsed(value)
    readings: dict[str, float] = {}
    for name, reading in value.items():
        if not _is_number(reading):
            return Unparsed(value)
        try:
            readings[name] = float(reading)
        except OverflowError:
            # Integers beyond float range; the range check rejects them.
            readings[name] = math.inf if reading > 0 else -math.inf
    return Metrics(readings)


def _reject_constant(name: str) -> float:
    raise ValueError("%s is not valid JSON" % name)


def parse_sensors_output(text: str) -> SensorTree:
    """Parse `sensors -j` output into chip -> input -> InputValue."""
    try:
        data = json.loads(text, parse_constant=_reject_constant)
    except ValueError as e:
        raise ParseError("sensors output is invalid: %s" % e) from e
    if not isinstance(data, dict):
        raise ParseError(
            "sensors output is not a chip -> input mapping (got %s)"
            % type(data).__name__
        )
    tree: SensorTree = {}
    for chip, inputs in data.items():
        if not isinstance(inputs, dict):
            raise ParseError(
                "sensors output for chip %r is not an input mapping (got %s)"
                % (chip, type(inputs).__name__)
            )
        tree[chip] = {label: resolve_input(value) for label, value in inputs.items()}
    return tree


def read_sensor_tree(result: QueryResult) -> SensorTree:
    """Parse a query result, raising SensorsCommandError if the query failed."""
    if not result.succeeded:
        raise SensorsCommandError("sensors command failed: %s" % result.error)
    return parse_sensors_output(result.text)
