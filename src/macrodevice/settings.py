import collections.abc
import logging
import pathlib
import types
import typing

import cattrs
import cattrs.errors

from .device.hwtypes import ConfigurationError

logger = logging.getLogger(__name__)

TRUE_STRINGS = frozenset(("true", "yes", "1"))
FALSE_STRINGS = frozenset(("false", "no", "0"))

# Settings arrive as strings; these mark fields that need non-decimal parsing.
HexInt = typing.NewType("HexInt", int)
Milliseconds = typing.NewType("Milliseconds", int)

SettingsMap = collections.abc.Mapping[str, str]
S = typing.TypeVar("S")


def string_to_bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in TRUE_STRINGS:
        return True
    if lowered in FALSE_STRINGS:
        return False
    raise ValueError(f"Expected a boolean, got {value!r}")


def parse_hex(value: str) -> int:
    return int(value, 16)


def parse_milliseconds(value: str) -> int:
    return int(value, 10)


def milliseconds_to_seconds(timeout: int) -> float:
    "Negative timeouts mean no bound at all, which trio spells as infinity."
    if timeout < 0:
        return float("inf")
    return timeout / 1000


settings_converter = cattrs.Converter()
settings_converter.register_structure_hook(bool, lambda v, _: string_to_bool(v))
settings_converter.register_structure_hook(int, lambda v, _: int(v, 10))
settings_converter.register_structure_hook(pathlib.Path, lambda v, _: pathlib.Path(v))
settings_converter.register_structure_hook(HexInt, lambda v, _: HexInt(parse_hex(v)))
settings_converter.register_structure_hook(Milliseconds, lambda v, _: Milliseconds(parse_milliseconds(v)))


def normalize_settings(raw: collections.abc.Mapping[typing.Any, typing.Any]) -> SettingsMap:
    """Flatten script-provided settings into an immutable str -> str mapping.

    Strings pass through, booleans become "true"/"false" and numbers use their str() form. Keys that
    are not strings and values of any other type are dropped. Note that a number is always rendered
    in decimal, so hexadecimal settings such as vid/pid should be given as strings.
    """
    normalized: dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            logger.debug("Ignoring non-string settings key %r", key)
            continue
        if isinstance(value, bool):
            normalized[key] = "true" if value else "false"
        elif isinstance(value, str):
            normalized[key] = value
        elif isinstance(value, (int, float)):
            normalized[key] = str(value)
        else:
            logger.debug("Ignoring setting %r with unsupported value %r", key, value)
    return types.MappingProxyType(normalized)


def structure_settings(settings: SettingsMap, cls: type[S]) -> S:
    try:
        return settings_converter.structure(dict(settings), cls)
    except cattrs.errors.BaseValidationError as exc:
        problems = "; ".join(cattrs.transform_error(exc))
        raise ConfigurationError(f"Invalid settings for {cls.__name__}: {problems}") from exc
    except (KeyError, ValueError, TypeError) as exc:
        raise ConfigurationError(f"Invalid settings for {cls.__name__}: {exc!r}") from exc
