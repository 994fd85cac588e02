"""Per-context ban policy.

Each protected operation (:class:`Context`) has its own sliding window,
failure threshold and ban duration.  The table must cover every context;
looking up anything else is a programming error and raises
:class:`ConfigurationError` instead of falling back to a default.

Environment overrides::

    LOGIN_WINDOW_MINUTES      default window for every context (15)
    LOGIN_FAILURE_THRESHOLD   default threshold for every context (5)
    LOGIN_BAN_MINUTES         default ban duration for every context (15)

    BAN_POLICY_<CONTEXT>_WINDOW_MINUTES
    BAN_POLICY_<CONTEXT>_FAILURE_THRESHOLD
    BAN_POLICY_<CONTEXT>_BAN_MINUTES

``<CONTEXT>`` is the upper-cased context value, e.g. ``AUTH_APIKEY``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from harborguard.helpers.errors import ConfigurationError

DEFAULT_WINDOW_MINUTES = 15
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_BAN_MINUTES = 15


class Context(StrEnum):
    AUTH_LOGIN = "auth_login"
    SETUP = "setup"
    AUTH_APIKEY = "auth_apikey"
    AUTH_SUBSCRIBER_TOKEN = "auth_subscriber_token"
    CALL_JOIN = "call_join"


def parse_context(value: Context | str) -> Context:
    """Coerce *value* to a :class:`Context` or raise ConfigurationError."""
    if isinstance(value, Context):
        return value
    try:
        return Context(value)
    except ValueError:
        raise ConfigurationError(f"Unknown ban context: {value!r}") from None


class PolicyEntry(BaseModel):
    """Window, threshold and ban length for one context."""

    model_config = ConfigDict(frozen=True)

    window_minutes: int = Field(gt=0)
    failure_threshold: int = Field(ge=0)
    ban_minutes: int = Field(gt=0)


class PolicyTable:
    """Exhaustive mapping of :class:`Context` to :class:`PolicyEntry`."""

    def __init__(self, entries: Mapping[Context | str, PolicyEntry]) -> None:
        table: dict[Context, PolicyEntry] = {}
        for key, entry in entries.items():
            table[parse_context(key)] = entry
        missing = [c.value for c in Context if c not in table]
        if missing:
            raise ConfigurationError(
                f"Ban policy missing for context(s): {', '.join(missing)}"
            )
        self._entries = table

    @classmethod
    def uniform(
        cls,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        ban_minutes: int = DEFAULT_BAN_MINUTES,
    ) -> PolicyTable:
        """Same policy for every context."""
        entry = _build_entry(window_minutes, failure_threshold, ban_minutes)
        return cls({c: entry for c in Context})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PolicyTable:
        """Build the table from environment variables (see module docstring)."""
        env = os.environ if environ is None else environ

        window = _int_env(env, "LOGIN_WINDOW_MINUTES", DEFAULT_WINDOW_MINUTES)
        threshold = _int_env(env, "LOGIN_FAILURE_THRESHOLD", DEFAULT_FAILURE_THRESHOLD)
        ban = _int_env(env, "LOGIN_BAN_MINUTES", DEFAULT_BAN_MINUTES)

        entries: dict[Context, PolicyEntry] = {}
        for ctx in Context:
            prefix = f"BAN_POLICY_{ctx.value.upper()}_"
            entries[ctx] = _build_entry(
                _int_env(env, prefix + "WINDOW_MINUTES", window),
                _int_env(env, prefix + "FAILURE_THRESHOLD", threshold),
                _int_env(env, prefix + "BAN_MINUTES", ban),
            )
        return cls(entries)

    def get(self, context: Context | str) -> PolicyEntry:
        return self._entries[parse_context(context)]

    def __getitem__(self, context: Context | str) -> PolicyEntry:
        return self.get(context)

    def items(self) -> list[tuple[Context, PolicyEntry]]:
        return list(self._entries.items())


def _build_entry(window: int, threshold: int, ban: int) -> PolicyEntry:
    try:
        return PolicyEntry(
            window_minutes=window, failure_threshold=threshold, ban_minutes=ban
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid ban policy: {e}") from e


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
