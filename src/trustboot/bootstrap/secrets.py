"""Secret provisioner: write values into broker variables."""
from __future__ import annotations

import logging

from ..errors import ValidationError
from ..models import VariableBinding
from ..providers.conjur import ConjurCLI

LOGGER = logging.getLogger(__name__)


def variable_id(branch: str, path: str) -> str:
    """Return the fully qualified id of variable *path* under *branch*."""
    cleaned_branch = branch.strip().strip("/")
    cleaned_path = path.strip().strip("/")
    if not cleaned_path:
        raise ValidationError("Variable path must not be empty.")
    return f"{cleaned_branch}/{cleaned_path}" if cleaned_branch else cleaned_path


def set_variable(conjur: ConjurCLI, path: str, value: str) -> VariableBinding:
    """Store *value* at *path*; the latest write is the one delivered."""
    cleaned = path.strip().strip("/")
    if not cleaned:
        raise ValidationError("Variable path must not be empty.")
    conjur.variable_set(cleaned, value)
    LOGGER.info("Set variable %s", cleaned)
    return VariableBinding(path=cleaned, value=value)


__all__ = ["set_variable", "variable_id"]
