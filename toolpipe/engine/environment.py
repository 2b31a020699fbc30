"""Module environment: child process environment overlay."""
#
# PURPOSE:
# Interpreted tools buffer their output when stdout is a pipe, which hides
# real-time output. DEFAULT_ENVIRONMENT lists the keys injected to prevent
# that; a key is only added when the caller's environment lacks it.
#

import os
from typing import Mapping, Optional, Dict

DEFAULT_ENVIRONMENT: Mapping[str, str] = {
    "PYTHONUNBUFFERED": "1",
}


def merge(explicit: Mapping[str, str], defaults: Mapping[str, str] = DEFAULT_ENVIRONMENT) -> Dict[str, str]:
    """Return a new mapping with ``defaults`` filled in wherever ``explicit`` has no value."""
    merged = dict(defaults)
    merged.update(explicit)
    return merged


def child_environment(
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Environment for a spawned tool: ``base`` (the current process by default) plus overrides, then defaults."""
    explicit = dict(os.environ if base is None else base)
    if overrides:
        explicit.update(overrides)
    return merge(explicit, DEFAULT_ENVIRONMENT)
