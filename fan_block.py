#!/usr/bin/env python3
"""
Fan speed block for a status bar.

Each update runs `sensors -j [chip]`, keeps the fan*input readings of the
whitelisted inputs, and renders their min/max/average RPM through the
configured format. A cycle with no valid readings leaves the text as it was.

Run with --help for configuration options.

Dependencies:
    sudo apt install lm-sensors
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
import time
import uuid
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, cast

import numpy as np

from sensors import Metrics, ParseError, Query, SensorTree, query_sensors, read_sensor_tree
from template import ConfigError, Template

log = logging.getLogger("fan-block")

# Valid fan speed range in RPM, [min, max).
FAN_RPM_MIN = 0
FAN_RPM_MAX = 10000

DEFAULT_INTERVAL_SECONDS = 15.0
DEFAULT_FORMAT = "{average}RPM"


@dataclasses.dataclass(slots=True, kw_only=True)
class FanConfig:
    """Fan block configuration."""

    interval: float = DEFAULT_INTERVAL_SECONDS
    format: str = DEFAULT_FORMAT
    chip: str | None = None
    inputs: frozenset[str] | None = None  # None = all inputs
    color_overrides: dict[str, str] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FanConfig:
        """Build config from a block table. Unknown keys are rejected."""
        fields = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - fields)
        if unknown:
            raise ConfigError("Unknown fan config field(s): %s" % ", ".join(unknown))

        cfg = cls()
        if "interval" in data:
            cfg.interval = _parse_interval(data["interval"])
        if "format" in data:
            if not isinstance(data["format"], str):
                raise ConfigError("format must be a string, got %r" % data["format"])
            cfg.format = data["format"]
        if data.get("chip") is not None:
            if not isinstance(data["chip"], str):
                raise ConfigError("chip must be a string, got %r" % data["chip"])
            cfg.chip = data["chip"]
        if data.get("inputs") is not None:
            cfg.inputs = _parse_inputs(data["inputs"])
        if data.get("color_overrides") is not None:
            cfg.color_overrides = _parse_color_overrides(data["color_overrides"])
        return cfg

    @classmethod
    def from_args(cls, argv: Sequence[str] | None = None) -> tuple[FanConfig, bool]:
        """Parse command-line arguments. Returns (config, once)."""
        p = argparse.ArgumentParser(
            description="Fan speed status bar block",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Format placeholders: {average} {min} {max}, with optional integer specs.

  Examples:
    --format '{average}RPM'                Default
    --format '{min}-{max} ({average})'     Range and mean
    --format '{average:>5} RPM'            Padded
    --chip nct6798-isa-0290 --input fan1 --input fan2
""",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=DEFAULT_INTERVAL_SECONDS,
            help="Poll interval (seconds).",
        )
        _ = p.add_argument(
            "--format",
            default=DEFAULT_FORMAT,
            help="Output format.",
        )
        _ = p.add_argument(
            "--chip",
            default=None,
            help="Only query this sensors chip.",
        )
        _ = p.add_argument(
            "--input",
            action="append",
            metavar="LABEL",
            help="Accepted input label. Repeatable; default is all inputs.",
        )
        _ = p.add_argument(
            "--color",
            action="append",
            metavar="KEY=VALUE",
            help="Color override passed to the bar. Repeatable.",
        )
        _ = p.add_argument(
            "--once",
            action="store_true",
            help="Print one update and exit.",
        )
        _ = p.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Debug logging.",
        )
        args = p.parse_args(argv)

        logging.basicConfig(
            level=logging.DEBUG if cast(bool, args.verbose) else logging.INFO,
            format="%(levelname)s: %(message)s",
        )

        data: dict[str, Any] = {
            "interval": cast(float, args.interval),
            "format": cast(str, args.format),
            "chip": cast("str | None", args.chip),
            "inputs": cast("list[str] | None", args.input),
        }
        colors: dict[str, str] = {}
        for spec in cast(list[str], args.color or []):
            if "=" not in spec:
                p.error("Invalid color override (missing '='): %s" % spec)
            key, value = spec.split("=", 1)
            colors[key.strip()] = value.strip()
        if colors:
            data["color_overrides"] = colors

        try:
            cfg = cls.from_dict(data)
        except ConfigError as e:
            p.error(str(e))
        return cfg, cast(bool, args.once)


def _parse_interval(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError("interval must be a number of seconds, got %r" % (value,))
    if value <= 0:
        raise ConfigError("interval must be positive, got %s" % value)
    return float(value)


def _parse_inputs(value: object) -> frozenset[str]:
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ConfigError("inputs must be a list of strings, got %r" % (value,))
    labels = list(cast(Iterable[object], value))
    if not all(isinstance(x, str) for x in labels):
        raise ConfigError("inputs must be a list of strings, got %r" % (value,))
    return frozenset(cast(list[str], labels))


def _parse_color_overrides(value: object) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise ConfigError("color_overrides must be a mapping, got %r" % (value,))
    items = cast(Mapping[object, object], value).items()
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in items):
        raise ConfigError("color_overrides must map strings to strings")
    return dict(cast(Mapping[str, str], value))


def is_fan_metric(name: str) -> bool:
    """Raw tachometer fields: fan1_input, fan2_input, ... (not _min/_max/_alarm)."""
    return name.startswith("fan") and name.endswith("input")


def select_readings(
    tree: SensorTree,
    inputs: frozenset[str] | None = None,
    logger: logging.Logger | None = None,
) -> list[int]:
    """Collect valid fan RPM readings, truncated to int.

    Out-of-range values are reported on logger and dropped.
    """
    logger = logger or log
    fans: list[int] = []
    for chip, chip_inputs in tree.items():
        for label, value in chip_inputs.items():
            if inputs is not None and label not in inputs:
                continue
            if not isinstance(value, Metrics):
                logger.debug("Skipping %s/%s: not a metrics mapping", chip, label)
                continue
            for name, reading in value.readings.items():
                if not is_fan_metric(name):
                    continue
                if FAN_RPM_MIN <= reading < FAN_RPM_MAX:
                    fans.append(int(reading))
                else:
                    logger.warning(
                        "Fan (%s) outside of range [%d, %d)",
                        reading,
                        FAN_RPM_MIN,
                        FAN_RPM_MAX,
                    )
    return fans


def round_half_away(x: float) -> int:
    """Round to nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    return int(np.sign(x) * np.floor(np.abs(x) + 0.5))


def aggregate(readings: Sequence[int]) -> dict[str, int] | None:
    """Return {"average", "min", "max"} for readings, or None if empty."""
    if not readings:
        return None
    arr = np.asarray(readings, dtype=np.int64)
    return {
        "average": round_half_away(float(arr.sum()) / arr.size),
        "min": int(arr.min()),
        "max": int(arr.max()),
    }


class FanBlock:
    """Status bar block showing fan speeds."""

    config: FanConfig
    template: Template
    id: str
    icon: str
    _text: str
    _query: Query
    _log: logging.Logger

    def __init__(
        self,
        config: FanConfig,
        *,
        query: Query | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.template = Template.compile(config.format)
        self.id = uuid.uuid4().hex
        self.icon = "fan"
        self._text = ""
        self._query = query or query_sensors
        self._log = logger or log

    @property
    def text(self) -> str:
        return self._text

    @property
    def interval(self) -> float:
        return self.config.interval

    def update(self) -> float:
        """Run one cycle. Returns seconds until the next one.

        Raises ParseError if sensors failed or its output is unusable; the
        text is left unchanged in that case, and when no reading is valid.
        """
        tree = read_sensor_tree(self._query(self.config.chip))
        fans = select_readings(tree, self.config.inputs, self._log)
        values = aggregate(fans)
        if values is None:
            self._log.debug("No valid fan readings, keeping %r", self._text)
        else:
            self._text = self.template.render(values)
        return self.config.interval

    def view(self) -> list[dict[str, str]]:
        """Widget descriptions for the bar; color overrides pass through."""
        widget = dict(self.config.color_overrides or {})
        widget.update(name=self.id, icon=self.icon, full_text=self._text)
        return [widget]


class BlockRunner:
    """Minimal scheduler: update, print changed text, sleep."""

    block: FanBlock
    running: bool

    def __init__(self, block: FanBlock) -> None:
        self.block = block
        self.running = False

    def step(self) -> float:
        """One scheduled cycle. Cycle failures are logged, not raised."""
        before = self.block.text
        try:
            delay = self.block.update()
        except ParseError:
            log.exception("Fan update failed")
            return self.block.interval
        if self.block.text != before:
            print(self.block.text, flush=True)
        return delay

    def shutdown(
        self,
        signum: int | None = None,
        _frame: object = None,
    ) -> None:
        log.info("Shutting down (signal %d)", signum or 0)
        self.running = False

    def run(self) -> None:
        _ = signal.signal(signal.SIGTERM, self.shutdown)
        _ = signal.signal(signal.SIGINT, self.shutdown)

        cfg = self.block.config
        log.info(
            "Starting: interval=%ss chip=%s inputs=%s",
            cfg.interval,
            cfg.chip or "all",
            ",".join(sorted(cfg.inputs)) if cfg.inputs is not None else "all",
        )
        self.running = True
        while self.running:
            time.sleep(self.step())


def main(argv: Sequence[str] | None = None) -> int:
    config, once = FanConfig.from_args(argv)
    try:
        block = FanBlock(config)
    except ConfigError as e:
        log.error("%s", e)
        return 2
    if once:
        try:
            _ = block.update()
        except ParseError as e:
            log.error("%s", e)
            return 1
        print(block.text)
        return 0
    BlockRunner(block).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
