"""Exception taxonomy for the abuse-protection engine.

``StorageError`` covers every failure talking to the persistence backend
and is always propagated to the caller.  ``ConfigurationError`` marks a
programming or deployment mistake (unknown context, incomplete policy,
database used before initialization) and is fatal at startup.
"""

import traceback


class GuardError(Exception):
    """Base class for all errors raised by the guard."""


class StorageError(GuardError):
    """The attempt or ban store could not complete an operation."""


class ConfigurationError(GuardError):
    """Policy or runtime configuration is missing or invalid."""


def format_error(e: Exception, include_traceback: bool = False) -> str:
    """Render *e* as a single string for logs and development responses."""
    text = f"{type(e).__name__}: {e}"
    cause = e.__cause__
    if cause is not None:
        text += f" (caused by {type(cause).__name__}: {cause})"
    if include_traceback:
        text += "\n" + "".join(traceback.format_exception(e))
    return text
