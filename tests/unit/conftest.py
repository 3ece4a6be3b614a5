"""Shared fixtures: on-disk plugin trees for the pure-Python modules."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import pytest

from pants_buf_plugins._plugin import Plugin, load_plugin


def plugin_yaml(name: str, version: str, deps: Sequence[str] = (), extra: str = "") -> str:
    lines = [
        "version: v1",
        f"name: buf.build/{name}",
        f"plugin_version: {version}",
        "source_url: https://github.com/example/example",
        "description: Example plugin.",
        "spdx_license_id: Apache-2.0",
    ]
    if deps:
        lines.append("deps:")
        lines.extend(f"  - plugin: buf.build/{dep}" for dep in deps)
    if extra:
        lines.append(extra)
    return "\n".join(lines) + "\n"


class PluginTree:
    """Builds ``<root>/<owner>/<name>/<version>/`` plugin directories."""

    def __init__(self, root: Path):
        self.root = root

    def add(
        self,
        name: str,
        version: str,
        deps: Sequence[str] = (),
        *,
        dockerfile: Optional[str] = None,
        extra: str = "",
        dockerignore: bool = True,
    ) -> Path:
        version_dir = self.root / name / version
        version_dir.mkdir(parents=True, exist_ok=True)
        (version_dir / "buf.plugin.yaml").write_text(plugin_yaml(name, version, deps, extra))
        if dockerignore:
            (version_dir / ".dockerignore").write_text("*\n!Dockerfile\n")
        if dockerfile is not None:
            (version_dir / "Dockerfile").write_text(dockerfile)
        return version_dir

    def load(self, name: str, version: str) -> Plugin:
        return load_plugin(str(self.root / name / version / "buf.plugin.yaml"), str(self.root))


@pytest.fixture
def plugin_tree(tmp_path: Path) -> PluginTree:
    root = tmp_path / "plugins"
    root.mkdir()
    return PluginTree(root)
