"""Discover and register backend modules which live next to a calling module."""

from __future__ import annotations

import importlib
import logging
import pkgutil
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_REGISTER_ATTRIBUTE = "_register_name"


class ValidationFunction(Protocol):
    def __call__(self, name: str, module: Any) -> None: ...


def validation_noop(name: str, module: Any) -> None: ...


def discover_and_register_modules(
    calling_module_name: str,
    required_attributes: list[str],
    validation_function: ValidationFunction | None = None,
    fail_on_failed_validation: bool = True,
) -> dict[str, ModuleType]:
    """Register every module in the package of the calling module which opts in.

    A module opts in by defining a module level `_register_name`. It is then checked
    for the required attributes and passed through the validation function.

    Args:
        calling_module_name: `__name__` of the module requesting the registration.
        required_attributes: Attributes which each registered module must define.
        validation_function: Further validation of each module. Problems are signaled
            by raising an exception.
        fail_on_failed_validation: If True, a failed validation is raised. Otherwise,
            it's logged and the module is skipped. Default: True.
    Returns:
        Registered modules, keyed by their `_register_name`.
    """
    # Setup
    if validation_function is None:
        validation_function = validation_noop
    # Each registered module must define the register attribute, in addition to the requested ones.
    required_attributes = [*required_attributes, _REGISTER_ATTRIBUTE]

    # Retrieve the calling module so that we know:
    calling_module = sys.modules[calling_module_name]
    # 1. Where to look
    package_dir = Path(getattr(calling_module, "__file__", "")).parent
    # 2. The package we're working in, so the modules can be imported relative to it.
    package = getattr(calling_module, "__package__", __package__)

    registered: dict[str, ModuleType] = {}
    # Scan for all modules in the package directory
    for module_info in pkgutil.iter_modules([str(package_dir)]):
        # Import the module
        module = importlib.import_module(f".{module_info.name}", package)

        # A module signals that it's of interest by defining the register attribute
        if not hasattr(module, _REGISTER_ATTRIBUTE):
            logger.debug(f"Skipping module {module_info.name}")
            continue

        missing = [attr for attr in required_attributes if not hasattr(module, attr)]
        if missing:
            msg = f"Module {module_info.name} requested registration, but is missing attributes: {missing}"
            raise ValueError(msg)

        name = module._register_name
        # Validate the module. It is expected to raise an exception if it cannot be validated.
        try:
            validation_function(name=name, module=module)
        except Exception as e:
            if fail_on_failed_validation:
                msg = f"Failed validation of module {module_info.name} under name '{name}'"
                raise ValueError(msg) from e
            logger.exception(e)
            continue

        # Names must be unique
        if name in registered:
            msg = f"Module name '{name}' registered twice (second: {module_info.name})"
            raise ValueError(msg)
        logger.debug(f"Registering module {name}")
        registered[name] = module

    return registered
