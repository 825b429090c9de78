import sys
import os
import importlib
from typing import Any as PyAny


def load_namespace(target: str) -> PyAny:
    """
    Load the object a peer exposes from a 'module:attribute' string.
    Example: 'background:api' imports 'background' and retrieves 'api'.
    A bare module name exposes the module itself.
    """
    module_name, _, attribute = target.partition(":")
    if not module_name:
        raise ValueError(f"Invalid target '{target}'. Must be in format 'module' or 'module:attribute'")

    # Ensure current directory is in path (like uvicorn)
    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ImportError(f"Could not import module '{module_name}': {e}")

    if not attribute:
        return module

    obj = module
    for name in attribute.split("."):
        try:
            obj = getattr(obj, name)
        except AttributeError:
            raise AttributeError(f"Module '{module_name}' has no attribute '{attribute}'")
    return obj
