"""Parse size strings such as ``240x?`` or ``50%`` into size directives."""

import re

from thumbforge.models import Dimensions, InvalidSizeError, Percentage, SizeSpec

PERCENT_RE = re.compile(r"(\d+)%", re.ASCII)
DIMENSIONS_RE = re.compile(r"(\d+|\?)x(\d+|\?)", re.ASCII)


def _side(token: str) -> int | None:
    if token == "?":
        return None
    value = int(token)
    # Only "?" means "keep aspect ratio"; 0 is not a usable size.
    if value == 0:
        raise InvalidSizeError()
    return value


def parse_size(size_str: str) -> SizeSpec:
    """Parse a size string into a Percentage or Dimensions directive.

    Accepted forms are ``<n>%`` and ``<w>x<h>`` where either side may be ``?``
    to preserve the aspect ratio. Matching is case-sensitive and the whole
    string must match.

    Raises:
        InvalidSizeError: the string is malformed, is ``?x?``, or asks for a
            zero size.
    """
    if not isinstance(size_str, str):
        raise InvalidSizeError()

    m = PERCENT_RE.fullmatch(size_str)
    if m:
        value = int(m.group(1))
        if value == 0:
            raise InvalidSizeError()
        return Percentage(value)

    m = DIMENSIONS_RE.fullmatch(size_str)
    if m is None:
        raise InvalidSizeError()

    # Dimensions rejects the case where both sides are unset.
    return Dimensions(width=_side(m.group(1)), height=_side(m.group(2)))
