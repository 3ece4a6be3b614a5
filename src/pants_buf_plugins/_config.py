"""Environment inputs of the release pipeline (no Pants dependencies).

Explicit options win over environment variables, which win over defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

PLUGINS_ENV = "PLUGINS"
ANY_MODIFIED_ENV = "ANY_MODIFIED"
ALL_MODIFIED_FILES_ENV = "ALL_MODIFIED_FILES"
GITHUB_TOKEN_ENV = "GITHUB_TOKEN"
DOCKER_ORG_ENV = "DOCKER_ORG"
MINISIGN_PASSWORD_ENV = "MINISIGN_PRIVATE_KEY_PASSWORD"
ALLOW_EMPTY_PLUGIN_SUM_ENV = "ALLOW_EMPTY_PLUGIN_SUM"

_TRUE = frozenset({"1", "t", "true", "yes", "y", "on"})


def first_set(*values: Optional[str], default: str = "") -> str:
    """Return the first non-empty value."""
    for value in values:
        if value:
            return value
    return default


@dataclass(frozen=True)
class ReleaseEnvironment:
    plugins: Optional[str] = None
    any_modified: Optional[str] = None
    all_modified_files: Optional[str] = None
    github_token: str = ""
    docker_org: str = ""
    minisign_private_key_password: str = ""
    allow_empty_plugin_sum: bool = False

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "ReleaseEnvironment":
        env = os.environ if environ is None else environ
        return cls(
            plugins=env.get(PLUGINS_ENV),
            any_modified=env.get(ANY_MODIFIED_ENV),
            all_modified_files=env.get(ALL_MODIFIED_FILES_ENV),
            github_token=env.get(GITHUB_TOKEN_ENV, ""),
            docker_org=env.get(DOCKER_ORG_ENV, ""),
            minisign_private_key_password=env.get(MINISIGN_PASSWORD_ENV, ""),
            allow_empty_plugin_sum=env.get(ALLOW_EMPTY_PLUGIN_SUM_ENV, "").strip().lower() in _TRUE,
        )

    def plugins_or(self, option: str, default: str = "") -> str:
        """Selection from ``option``, else ``PLUGINS``, else ``default``."""
        if option:
            return option
        if self.plugins is not None:
            return self.plugins
        return default
