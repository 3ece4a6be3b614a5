"""Pants plugin registration for the buf plugin release pipeline.

Backend path: pants_buf_plugins

Enable in pants.toml:

    [GLOBAL]
    backend_packages = [
        "pants_buf_plugins",
    ]

    [buf-plugins]
    plugins_dir = "plugins"
    minisign_public_key = ".github/minisign.pub"
"""

from __future__ import annotations

from typing import Iterable, Type

from pants.engine.rules import Rule
from pants.option.subsystem import Subsystem

from pants_buf_plugins.goals import build as build_goal
from pants_buf_plugins.goals import changed as changed_goal
from pants_buf_plugins.goals import discover as discover_goal
from pants_buf_plugins.goals import download as download_goal
from pants_buf_plugins.goals import fetch as fetch_goal
from pants_buf_plugins.goals import latest as latest_goal
from pants_buf_plugins.goals import package as package_goal
from pants_buf_plugins.goals import push as push_goal
from pants_buf_plugins.goals import release as release_goal
from pants_buf_plugins.rules import base_images as base_images_rule
from pants_buf_plugins.rules import discovery as discovery_rule
from pants_buf_plugins.rules import selection as selection_rule
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


def rules() -> Iterable[Rule]:
    return [
        *discovery_rule.rules(),
        *selection_rule.rules(),
        *base_images_rule.rules(),
        *discover_goal.rules(),
        *changed_goal.rules(),
        *fetch_goal.rules(),
        *build_goal.rules(),
        *push_goal.rules(),
        *package_goal.rules(),
        *release_goal.rules(),
        *latest_goal.rules(),
        *download_goal.rules(),
    ]


def target_types() -> Iterable[type]:
    return []


def subsystems() -> Iterable[Type[Subsystem]]:
    return [PluginReleaseSubsystem]
