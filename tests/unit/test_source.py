"""Tests for source.yaml decoding and discovery."""

from __future__ import annotations

import pytest

from pants_buf_plugins._exceptions import MalformedSource, SourceFileNotFound
from pants_buf_plugins._source import (
    GitHubSource,
    MavenSource,
    SourceKind,
    gather_source_configs,
    parse_source_config,
)


class TestParseSourceConfig:
    def test_github(self):
        config = parse_source_config(
            "source:\n  github:\n    owner: connectrpc\n    repository: connect-go\n",
            "plugins/connectrpc/go/source.yaml",
        )
        assert config.kind is SourceKind.GITHUB
        assert config.origin == GitHubSource(owner="connectrpc", repository="connect-go")
        assert not config.disabled
        assert not config.include_prerelease
        assert config.plugin_dir == "plugins/connectrpc/go"

    def test_flags_and_ignore_versions(self):
        config = parse_source_config(
            "include_prerelease: true\n"
            "source:\n"
            "  disabled: true\n"
            "  ignore_versions: [v1.0.0, v1.0.1]\n"
            "  maven:\n    group: io.grpc\n    name: protoc-gen-grpc-java\n",
            "source.yaml",
        )
        assert config.origin == MavenSource(group="io.grpc", name="protoc-gen-grpc-java")
        assert config.disabled
        assert config.include_prerelease
        assert config.ignore_versions == ("v1.0.0", "v1.0.1")

    def test_cache_key(self):
        config = parse_source_config(
            "source:\n  ignore_versions: [v2, v1]\n  github:\n    owner: o\n    repository: r\n",
            "source.yaml",
        )
        assert config.cache_key == "github-o-r-false-v1,v2"

    def test_shared_cache_key(self):
        a = parse_source_config("source:\n  npm_registry:\n    name: '@bufbuild/protoc-gen-es'\n", "a/source.yaml")
        b = parse_source_config("source:\n  npm_registry:\n    name: '@bufbuild/protoc-gen-es'\n", "b/source.yaml")
        assert a.cache_key == b.cache_key

    @pytest.mark.parametrize(
        "content,match",
        [
            ("source:\n  github:\n    owner: o\n    repository: r\n    extra: x\n", "unknown field"),
            ("sources: {}\n", "unknown field"),
            ("source:\n  goproxy:\n    name: x\n  npm_registry:\n    name: y\n", "exactly one origin"),
            ("source:\n  disabled: false\n", "exactly one origin"),
            ("source:\n  github:\n    owner: o\n", "github.repository is required"),
            ("source:\n  disabled: 'yes'\n  goproxy:\n    name: x\n", "disabled must be a boolean"),
            ("source:\n  ignore_versions: [v1]\n  goproxy:\n    name: x\n", "not supported for goproxy"),
            ("- a\n", "mapping"),
            ("source: [\n", "invalid YAML"),
        ],
    )
    def test_invalid(self, content, match):
        with pytest.raises(MalformedSource, match=match):
            parse_source_config(content, "source.yaml")


class TestGatherSourceConfigs:
    def test_walk_skips_internal_dirs(self, tmp_path):
        for rel in ("plugins/a/b", "plugins/a/c", "internal/x", "tests/y", ".git/z"):
            (tmp_path / rel).mkdir(parents=True)
            (tmp_path / rel / "source.yaml").write_text("source:\n  goproxy:\n    name: example.com/x\n")
        configs = gather_source_configs(str(tmp_path))
        assert [c.plugin_dir for c in configs] == [
            str(tmp_path / "plugins" / "a" / "b"),
            str(tmp_path / "plugins" / "a" / "c"),
        ]

    def test_none_found(self, tmp_path):
        with pytest.raises(SourceFileNotFound):
            gather_source_configs(str(tmp_path))
