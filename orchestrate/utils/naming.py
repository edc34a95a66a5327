# orchestrate/utils/naming.py
from string import Formatter
from typing import Any, Dict, List, Mapping

from orchestrate.services.exceptions import PatternError

KNOWN_TOKENS = ("type", "region", "zone", "project", "template", "size", "gpu_count", "gpu_type", "user")

_formatter = Formatter()


def pattern_tokens(pattern: str) -> List[str]:
    """
    Returns the placeholder tokens of a pattern, in order of appearance.

    Raises:
        PatternError: The pattern is malformed, or uses format specs,
            conversions or attribute access, which names never need.
    """
    try:
        parsed = list(_formatter.parse(pattern))
    except ValueError as e:
        raise PatternError([], f"Malformed naming pattern '{pattern}': {e}") from e

    tokens = []
    for _, field, spec, conversion in parsed:
        if field is None:
            continue
        if not field or spec or conversion or not field.isidentifier():
            raise PatternError([field], f"Unsupported placeholder '{{{field}}}' in naming pattern '{pattern}'.")
        if field not in tokens:
            tokens.append(field)
    return tokens


def validate_pattern(pattern: str) -> None:
    unknown = [token for token in pattern_tokens(pattern) if token not in KNOWN_TOKENS]
    if unknown:
        raise PatternError(unknown, f"Unknown naming token(s) {', '.join(unknown)} in pattern '{pattern}'.")


def resolve(pattern: str, context: Mapping[str, Any]) -> str:
    """
    Substitutes every placeholder of `pattern` from `context`.

    Either every token resolves or nothing is substituted: a token that is
    absent from the context, or mapped to None, fails the whole call.

    Args:
        pattern: A name pattern such as '{type}-{region}-{gpu_count}x{gpu_type}-{user}'.
        context: Token values.

    Returns:
        The resolved name.

    Raises:
        PatternError: Naming every missing token, in pattern order.
    """
    tokens = pattern_tokens(pattern)
    missing = [token for token in tokens if context.get(token) is None]
    if missing:
        raise PatternError(missing)
    values: Dict[str, str] = {token: str(context[token]) for token in tokens}
    return pattern.format(**values)


def region_of(zone: str) -> str:
    """us-central1-a -> us-central1"""
    region, sep, _ = zone.rpartition("-")
    return region if sep else zone
