"""Reading configuration values from the environment."""

from __future__ import annotations

import logging
import os
import re
from datetime import timedelta
from fractions import Fraction

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

_NUMBER = r"(\d+\.?\d*|\.\d+)"
_UNIT = r"(ns|us|µs|μs|ms|s|m|h)"
_COMPONENT = re.compile(_NUMBER + _UNIT)
_DURATION = re.compile(r"(?:" + _NUMBER + _UNIT + r")+")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"15ms"`` or ``"-2.5s"``."""
    body = text
    negative = False
    if body and body[0] in "+-":
        negative = body[0] == "-"
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body or not _DURATION.fullmatch(body):
        raise ValueError(f'time: invalid duration "{text}"')
    nanoseconds = sum(
        (Fraction(number) * _UNIT_NANOSECONDS[unit] for number, unit in _COMPONENT.findall(body)),
        Fraction(0),
    )
    result = timedelta(microseconds=round(nanoseconds / 1000))
    return -result if negative else result


def parse_env_string_with_default(env: str, default: str, logger: logging.Logger) -> str:
    """Return the variable's value, or ``default`` when it is unset or empty."""
    value = os.environ.get(env, "")
    logger.debug("got env variable %s=%r", env, value)
    return value or default


def parse_env_string_required(env: str, logger: logging.Logger) -> str:
    """Return the variable's value; raise KeyError when it is unset or empty."""
    value = os.environ.get(env, "")
    if not value:
        logger.error("required environment variable %s is not set", env)
        raise KeyError(f"required environment variable {env} is not set")
    logger.debug("got env variable %s", env)
    return value


def parse_env_duration(env: str, default: timedelta, logger: logging.Logger) -> timedelta:
    """Return the variable parsed as a duration, or ``default`` when that fails."""
    raw = os.environ.get(env, "")
    try:
        return parse_duration(raw)
    except ValueError as exc:
        logger.warning(
            "Could not parse %s from environment, setting default %s: %s", env, default, exc
        )
        return default