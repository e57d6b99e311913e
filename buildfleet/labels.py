"""Label helpers.

Two kinds of labels are in play:

- build labels: space-separated atoms matching jobs to agent pools
  (``"linux docker"``)
- Google labels: key/value pairs set on the Compute Engine instance, used
  to find the instances a cloud owns
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from buildfleet.core.exceptions import ConfigurationError

_LABEL_KEY = re.compile(r"^[a-z][a-z0-9_-]{0,62}$")
_LABEL_VALUE = re.compile(r"^[a-z0-9_-]{0,63}$")
_INVALID_VALUE_CHARS = re.compile(r"[^a-z0-9_-]+")


def parse_labels(raw: str | None) -> frozenset[str]:
    """Split a label string into its atoms."""
    if not raw:
        return frozenset()
    return frozenset(raw.split())


def sanitize_label_value(value: str) -> str:
    """Coerce free text into a valid Google label value.

    >>> sanitize_label_value("RestartPreemptedIT")
    'restartpreemptedit'
    """
    cleaned = _INVALID_VALUE_CHARS.sub("-", value.lower()).strip("-")
    return cleaned[:63]


def validate_google_labels(labels: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of labels, raising if any key or value is invalid."""
    for key, value in labels.items():
        if not _LABEL_KEY.match(key):
            raise ConfigurationError(f"Invalid Google label key: {key!r}")
        if not _LABEL_VALUE.match(value):
            raise ConfigurationError(f"Invalid Google label value for {key!r}: {value!r}")
    return dict(labels)


def label_filter(labels: Mapping[str, str]) -> str:
    """Build a Compute Engine list filter matching all the given labels."""
    return " AND ".join(
        f'labels.{key} = "{value}"' for key, value in sorted(labels.items())
    )


__all__ = [
    "label_filter",
    "parse_labels",
    "sanitize_label_value",
    "validate_google_labels",
]
