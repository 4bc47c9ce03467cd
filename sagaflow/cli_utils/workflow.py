"""Utility functions to locate workflow definitions for CLI commands."""

from __future__ import annotations

import importlib
import importlib.util
import sys
from pathlib import Path
from types import ModuleType

from sagaflow.errors import DefinitionError
from sagaflow.workflow import Workflow, WorkflowBuilder


def _import_from_path(path: Path) -> ModuleType:
    module_name = f"_sagaflow_target_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise DefinitionError(f"cannot import workflow file {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


def _import_module(location: str) -> ModuleType:
    if location.endswith(".py"):
        path = Path(location).expanduser().resolve()
        if not path.exists():
            raise DefinitionError(f"workflow file not found: {location}")
        return _import_from_path(path)
    return importlib.import_module(location)


def load_workflow(target: str) -> Workflow:
    """Resolve ``module:attr`` or ``path/to/file.py:attr`` to a :class:`Workflow`.

    ``attr`` may name a built workflow, an unbuilt :class:`WorkflowBuilder`
    or a zero-argument factory returning either.
    """
    location, sep, attr = target.rpartition(":")
    if not sep or not location or not attr:
        raise DefinitionError(
            f"invalid workflow target '{target}', expected module:attr or file.py:attr"
        )

    module = _import_module(location)
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise DefinitionError(f"'{attr}' not found in {location}") from None

    if not isinstance(obj, (Workflow, WorkflowBuilder)) and callable(obj):
        obj = obj()
    if isinstance(obj, WorkflowBuilder):
        obj = obj.build()
    if not isinstance(obj, Workflow):
        raise DefinitionError(f"{target} does not resolve to a workflow")
    return obj
