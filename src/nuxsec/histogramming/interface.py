"""Registry of histogram engine backends.

Each backend is a module in this package defining `_register_name` and an `Engine`
class which implements `nuxsec.histogramming.base.HistogramEngine`. Backends are
discovered at import time.
"""

from __future__ import annotations

import logging
from types import ModuleType

from nuxsec import register_modules
from nuxsec.errors import ConfigurationError
from nuxsec.histogramming import base

logger = logging.getLogger(__name__)

_engines: dict[str, ModuleType] = {}


def _validate_engine(name: str, module: ModuleType) -> None:
    """Validate that an engine module follows the expected interface."""
    required_methods = ["book", "book_universes", "evaluate", "universe_factors", "detect_universe_count"]
    engine_class = module.Engine
    missing = [m for m in required_methods if not callable(getattr(engine_class, m, None))]
    if missing:
        msg = f"Histogram engine {name} is missing the required methods {missing}"
        raise ValueError(msg)


def available_engines() -> list[str]:
    return sorted(_engines)


def get_engine(name: str = "dataframe", thread_count: int = 1) -> base.HistogramEngine:
    """Construct a histogram engine.

    Args:
        name: Registered name of the backend.
        thread_count: Number of workers used to evaluate a batch.
    Returns:
        The engine.
    """
    try:
        module = _engines[name]
    except KeyError as e:
        msg = f"Histogram engine '{name}' not registered or available. Available: {available_engines()}"
        raise ConfigurationError(msg) from e
    if thread_count < 1:
        msg = f"thread_count must be >= 1, got {thread_count}"
        raise ConfigurationError(msg)

    logger.debug(f"Using histogram engine '{name}' with {thread_count} thread(s)")
    engine: base.HistogramEngine = module.Engine(thread_count=thread_count)
    return engine


# Actually perform the discovery and registration of the engines
if not _engines:
    _engines.update(
        register_modules.discover_and_register_modules(
            calling_module_name=__name__,
            required_attributes=["Engine"],
            validation_function=_validate_engine,
        )
    )
