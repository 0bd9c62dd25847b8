"""Logging middleware. Reports every accepted mutation through ``logging``."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from stashy.middleware import SetState, wrap_set_state
from stashy.store import Initializer, StoreApi

_default_logger = logging.getLogger("stashy.log")


def _changed_keys(state, previous) -> list[str]:
    if not (isinstance(state, Mapping) and isinstance(previous, Mapping)):
        return []
    keys = [key for key in state if key not in previous or previous[key] is not state[key]]
    keys.extend(key for key in previous if key not in state)
    return sorted(map(str, keys))


def logged(
    initializer: Initializer,
    name: str = "stashy",
    level: int = logging.DEBUG,
    logger: logging.Logger | None = None,
) -> Initializer:
    """Log each accepted mutation, with the keys that changed for mapping state."""
    log = logger or _default_logger

    def _report(state, previous) -> None:
        if not log.isEnabledFor(level):
            return
        keys = _changed_keys(state, previous)
        if keys:
            log.log(level, "%s: changed %s", name, ", ".join(keys))
        else:
            log.log(level, "%s: state replaced", name)

    def _initializer(set_state: SetState, get_state, api: StoreApi):
        api.set_state = wrap_set_state(api.set_state, get_state, _report)
        return initializer(wrap_set_state(set_state, get_state, _report), get_state, api)

    return _initializer
