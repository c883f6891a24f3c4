"""Error kinds raised while building systematic variations.

Four kinds are distinguished, and callers branch on ``error.kind``:

- ``configuration``: missing/malformed specification, unknown sample category.
  Aborts the affected systematic.
- ``data_availability``: a weight or ratio column is missing for a sample, or
  a nominal histogram is missing from the template store. Aborts the affected systematic.
- ``degenerate_input``: nothing to decompose (e.g. a zero norm nominal stack,
  or the number of universes cannot be determined). Aborts the affected systematic.
- ``store_io``: the template store cannot be opened or written. Aborts the whole run.

Each error carries the context (systematic, sample, key) needed to fix the
configuration and rerun. Since all writes are upserts, reruns are safe.
"""

from __future__ import annotations

from typing import ClassVar


class SystematicsError(Exception):
    """Base class for all failures of the systematics builders.

    Args:
        message: Description of the failure.
        systematic: Name of the systematic being built, if known.
        sample: Name of the sample being processed, if known.
        key: Template store key or column involved, if known.
    """

    kind: ClassVar[str] = "unknown"

    def __init__(
        self, message: str, *, systematic: str | None = None, sample: str | None = None, key: str | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.systematic = systematic
        self.sample = sample
        self.key = key

    def with_context(self, *, systematic: str | None = None, sample: str | None = None) -> SystematicsError:
        """Fill in context which wasn't known where the error was raised.

        Existing values take precedence. Returns self so it can be re-raised directly.
        """
        if self.systematic is None:
            self.systematic = systematic
        if self.sample is None:
            self.sample = sample
        return self

    def __str__(self) -> str:
        context = [
            f"{label}={value}"
            for label, value in (("systematic", self.systematic), ("sample", self.sample), ("key", self.key))
            if value is not None
        ]
        if context:
            return f"{self.message} [{', '.join(context)}]"
        return self.message


class ConfigurationError(SystematicsError, ValueError):
    kind = "configuration"


class DataAvailabilityError(SystematicsError, LookupError):
    kind = "data_availability"


class DegenerateInputError(SystematicsError, ValueError):
    kind = "degenerate_input"


class StoreIOError(SystematicsError, OSError):
    kind = "store_io"
