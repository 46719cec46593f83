"""Provider wrappers around the external command-line collaborators."""
from __future__ import annotations

from .base import CommandRunner
from .conjur import ConjurCLI
from .conjurctl import ConjurAdmin
from .helm import HelmProvider
from .kind import KindProvider
from .kubectl import KubectlProvider

__all__ = [
    "CommandRunner",
    "ConjurAdmin",
    "ConjurCLI",
    "HelmProvider",
    "KindProvider",
    "KubectlProvider",
]
