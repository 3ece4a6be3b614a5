"""Tests for buf.plugin.yaml loading and plugin discovery."""

from __future__ import annotations

import pytest

from pants_buf_plugins._exceptions import DependencyCycle, MalformedManifest, PluginIOError
from pants_buf_plugins._plugin import (
    PluginIdentity,
    find_plugins,
    get_base_dockerfiles,
    latest_plugin_versions,
    parse_dependency_pin,
    parse_plugin_yaml,
    plugins_from_contents,
)

from conftest import plugin_yaml


# =============================================================================
# Identity / dependencies
# =============================================================================


class TestPluginIdentity:
    def test_parse(self):
        identity = PluginIdentity.parse("buf.build/bufbuild/connect-go")
        assert identity.remote == "buf.build"
        assert identity.owner == "bufbuild"
        assert identity.plugin == "connect-go"
        assert str(identity) == "buf.build/bufbuild/connect-go"

    @pytest.mark.parametrize("name", ["bufbuild/connect-go", "a/b/c/d", "buf.build//x"])
    def test_invalid(self, name):
        with pytest.raises(MalformedManifest, match="remote/owner/plugin"):
            PluginIdentity.parse(name)


class TestParseDependencyPin:
    def test_qualified(self):
        dep = parse_dependency_pin("buf.build/protocolbuffers/go:v1.28.1")
        assert dep.name == "buf.build/protocolbuffers/go"
        assert dep.version == "v1.28.1"
        assert dep.qualified("buf.build") == "buf.build/protocolbuffers/go:v1.28.1"

    def test_unqualified_gets_remote(self):
        dep = parse_dependency_pin("protocolbuffers/go:v1.28.1")
        assert dep.qualified("buf.build") == "buf.build/protocolbuffers/go:v1.28.1"

    @pytest.mark.parametrize(
        "pin",
        ["buf.build/protocolbuffers/go", "go:v1.0.0", "buf.build/protocolbuffers/go:latest"],
    )
    def test_invalid(self, pin):
        with pytest.raises(MalformedManifest):
            parse_dependency_pin(pin)


# =============================================================================
# parse_plugin_yaml
# =============================================================================


class TestParsePluginYaml:
    def test_fields(self):
        content = plugin_yaml("bufbuild/connect-go", "v1.5.0", deps=["protocolbuffers/go:v1.28.1"])
        plugin = parse_plugin_yaml(content, "/p/bufbuild/connect-go/v1.5.0/buf.plugin.yaml")
        assert plugin.name == "buf.build/bufbuild/connect-go"
        assert plugin.plugin_version == "v1.5.0"
        assert plugin.owner == "bufbuild"
        assert plugin.short_name == "connect-go"
        assert plugin.release_name == "bufbuild/connect-go"
        assert plugin.name_version == "buf.build/bufbuild/connect-go:v1.5.0"
        assert plugin.spdx_license_id == "Apache-2.0"
        assert [d.plugin for d in plugin.deps] == ["buf.build/protocolbuffers/go:v1.28.1"]
        assert str(plugin) == "bufbuild/connect-go:v1.5.0"

    def test_unknown_keys_tolerated(self):
        content = plugin_yaml("a/b", "v1.0.0", extra="output_languages: [go]")
        plugin = parse_plugin_yaml(content, "x")
        assert plugin.raw["output_languages"] == ["go"]

    def test_missing_name(self):
        with pytest.raises(MalformedManifest, match="missing required field: name"):
            parse_plugin_yaml("plugin_version: v1.0.0\n", "x")

    def test_missing_version(self):
        with pytest.raises(MalformedManifest, match="plugin_version"):
            parse_plugin_yaml("name: buf.build/a/b\n", "x")

    def test_invalid_version(self):
        with pytest.raises(MalformedManifest, match="invalid plugin_version"):
            parse_plugin_yaml("name: buf.build/a/b\nplugin_version: 1.0.0\n", "x")

    def test_invalid_yaml(self):
        with pytest.raises(MalformedManifest, match="invalid YAML"):
            parse_plugin_yaml("name: [unterminated\n", "x")

    def test_deps_must_be_list(self):
        with pytest.raises(MalformedManifest, match="deps must be a list"):
            parse_plugin_yaml("name: buf.build/a/b\nplugin_version: v1.0.0\ndeps: x\n", "x")

    def test_dep_revision_kept(self):
        content = (
            "name: buf.build/a/b\nplugin_version: v1.0.0\n"
            "deps:\n  - plugin: buf.build/a/c:v1.0.0\n    revision: 2\n"
        )
        assert parse_plugin_yaml(content, "x").deps[0].revision == 2


# =============================================================================
# Loading from disk
# =============================================================================


class TestLoadPlugin:
    def test_relpath(self, plugin_tree):
        plugin_tree.add("bufbuild/es", "v1.0.0")
        plugin = plugin_tree.load("bufbuild/es", "v1.0.0")
        assert plugin.relpath == "bufbuild/es/v1.0.0/buf.plugin.yaml"
        assert plugin.version_dir.endswith("bufbuild/es/v1.0.0")
        assert plugin.plugin_dir.endswith("bufbuild/es")

    def test_directory_must_match_version(self, plugin_tree):
        version_dir = plugin_tree.add("bufbuild/es", "v1.0.0")
        renamed = version_dir.parent / "v1.0.1"
        version_dir.rename(renamed)
        with pytest.raises(MalformedManifest, match="does not match plugin_version"):
            plugin_tree.load("bufbuild/es", "v1.0.1")

    def test_dockerignore_required(self, plugin_tree):
        plugin_tree.add("bufbuild/es", "v1.0.0", dockerignore=False)
        with pytest.raises(MalformedManifest, match=".dockerignore"):
            plugin_tree.load("bufbuild/es", "v1.0.0")

    def test_missing_file(self, plugin_tree):
        with pytest.raises(PluginIOError):
            plugin_tree.load("bufbuild/missing", "v1.0.0")


class TestFindPlugins:
    def test_sorted_by_name_and_semver(self, plugin_tree):
        plugin_tree.add("bufbuild/es", "v1.10.0")
        plugin_tree.add("bufbuild/es", "v1.2.0")
        plugin_tree.add("apple/swift", "v1.0.0")
        plugins = find_plugins(str(plugin_tree.root))
        assert [str(p) for p in plugins] == [
            "apple/swift:v1.0.0",
            "bufbuild/es:v1.2.0",
            "bufbuild/es:v1.10.0",
        ]

    def test_dependencies_first(self, plugin_tree):
        plugin_tree.add("bufbuild/connect-go", "v1.0.0", deps=["protocolbuffers/go:v1.28.1"])
        plugin_tree.add("protocolbuffers/go", "v1.28.1")
        plugins = find_plugins(str(plugin_tree.root))
        assert [str(p) for p in plugins] == [
            "protocolbuffers/go:v1.28.1",
            "bufbuild/connect-go:v1.0.0",
        ]

    def test_cycle(self, plugin_tree):
        plugin_tree.add("a/one", "v1.0.0", deps=["a/two:v1.0.0"])
        plugin_tree.add("a/two", "v1.0.0", deps=["a/one:v1.0.0"])
        with pytest.raises(DependencyCycle):
            find_plugins(str(plugin_tree.root))

    def test_skips_hidden_testdata_and_vendor(self, plugin_tree):
        plugin_tree.add("bufbuild/es", "v1.0.0")
        for skipped in (".git", "testdata", "vendor"):
            nested = plugin_tree.root / "bufbuild" / "es" / "v1.0.0" / skipped / "x" / "y" / "v1.0.0"
            nested.mkdir(parents=True)
            (nested / "buf.plugin.yaml").write_text("not: valid\n")
        assert [str(p) for p in find_plugins(str(plugin_tree.root))] == ["bufbuild/es:v1.0.0"]

    def test_missing_root(self, tmp_path):
        with pytest.raises(PluginIOError, match="not a directory"):
            find_plugins(str(tmp_path / "nope"))


class TestPluginsFromContents:
    def test_matches_find_plugins(self, plugin_tree):
        plugin_tree.add("bufbuild/connect-go", "v1.0.0", deps=["protocolbuffers/go:v1.28.1"])
        plugin_tree.add("protocolbuffers/go", "v1.28.1")
        contents = {
            str(path): path.read_bytes()
            for path in plugin_tree.root.rglob("*")
            if path.is_file()
        }
        from_disk = find_plugins(str(plugin_tree.root))
        from_memory = plugins_from_contents(str(plugin_tree.root), contents)
        assert from_memory == from_disk
        assert [p.relpath for p in from_memory] == [p.relpath for p in from_disk]

    def test_missing_dockerignore(self):
        contents = {"/r/a/b/v1.0.0/buf.plugin.yaml": plugin_yaml("a/b", "v1.0.0").encode()}
        with pytest.raises(MalformedManifest, match=".dockerignore"):
            plugins_from_contents("/r", contents)

    def test_ignores_files_outside_root_and_testdata(self):
        contents = {
            "/elsewhere/a/b/v1.0.0/buf.plugin.yaml": b"bad: [",
            "/r/testdata/a/b/v1.0.0/buf.plugin.yaml": b"bad: [",
            "/r/a/b/v1.0.0/buf.plugin.yaml": plugin_yaml("a/b", "v1.0.0").encode(),
            "/r/a/b/v1.0.0/.dockerignore": b"*\n",
        }
        assert [str(p) for p in plugins_from_contents("/r", contents)] == ["a/b:v1.0.0"]


class TestLatestPluginVersions:
    def test_latest(self, plugin_tree):
        for version in ("v1.2.0", "v1.10.0", "v1.9.0"):
            plugin_tree.add("bufbuild/es", version)
        plugins = find_plugins(str(plugin_tree.root))
        assert latest_plugin_versions(plugins) == {"buf.build/bufbuild/es": "v1.10.0"}


class TestGetBaseDockerfiles:
    def test_shallow_first(self, tmp_path):
        for rel in ("library/protoc/v21.3/base", "library/protoc/base-build", "other/dir"):
            (tmp_path / rel).mkdir(parents=True)
            (tmp_path / rel / "Dockerfile").write_text("FROM scratch\n")
        assert get_base_dockerfiles(str(tmp_path)) == [
            "library/protoc/base-build/Dockerfile",
            "library/protoc/v21.3/base/Dockerfile",
        ]
