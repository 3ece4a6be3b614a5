"""Tests for the release manifest, release classification and tags."""

from __future__ import annotations

import datetime
import json
import os

import pytest

from pants_buf_plugins._archive import calculate_digest
from pants_buf_plugins._exceptions import (
    DuplicateInReleases,
    MalformedManifest,
    MalformedReleaseTag,
    SignatureMismatch,
    UnsupportedRevision,
)
from pants_buf_plugins._minisign import PrivateKey
from pants_buf_plugins._releases import (
    PLUGIN_RELEASES_FILE,
    PLUGIN_RELEASES_SIGNATURE_FILE,
    PluginRelease,
    PluginReleases,
    ReleaseStatus,
    calculate_new_release_plugins,
    calculate_next_release,
    create_release_body,
    format_timestamp,
    latest_plugins_and_dependencies,
    load_plugin_releases,
    parse_timestamp,
    sign_plugin_releases,
    write_plugin_releases,
)

UTC = datetime.timezone.utc
NOW = datetime.datetime(2022, 11, 21, 12, 30, 15, 123456, tzinfo=UTC)
EARLIER = datetime.datetime(2022, 11, 1, tzinfo=UTC)


def release(name, version, deps=(), **overrides):
    values = dict(
        name=name,
        version=version,
        zip_digest="sha256:zip",
        yaml_digest="sha256:yaml",
        image_id="sha256:image",
        registry_image=f"ghcr.io/bufbuild/plugins-{name.replace('/', '-')}@sha256:d",
        release_tag="20221101.1",
        url=f"https://example.com/{name}/{version}.zip",
        last_updated=EARLIER,
        dependencies=tuple(deps),
    )
    values.update(overrides)
    return PluginRelease(**values)


@pytest.fixture(scope="module")
def private_key():
    return PrivateKey.generate()


class TestTimestamps:
    def test_format_truncates_to_seconds(self):
        assert format_timestamp(NOW) == "2022-11-21T12:30:15Z"

    def test_format_naive_is_utc(self):
        assert format_timestamp(datetime.datetime(2022, 1, 2, 3, 4, 5)) == "2022-01-02T03:04:05Z"

    def test_format_converts_to_utc(self):
        tz = datetime.timezone(datetime.timedelta(hours=2))
        assert format_timestamp(datetime.datetime(2022, 1, 2, 3, 4, 5, tzinfo=tz)) == "2022-01-02T01:04:05Z"

    def test_parse(self):
        assert parse_timestamp("2022-11-21T12:30:15Z") == NOW.replace(microsecond=0)
        assert parse_timestamp("2022-11-21T12:30:15.123456789Z").microsecond == 123456
        assert parse_timestamp("2022-11-21T14:30:15+02:00") == NOW.replace(microsecond=0)

    def test_parse_requires_timezone(self):
        with pytest.raises(ValueError):
            parse_timestamp("2022-11-21T12:30:15")


class TestPluginRelease:
    def test_dict_round_trip(self):
        original = release("bufbuild/es", "v1.0.0", deps=["buf.build/bufbuild/protobuf-es:v1.0.0"])
        assert PluginRelease.from_dict(original.to_dict()) == original

    def test_empty_dependencies_omitted(self):
        assert "dependencies" not in release("bufbuild/es", "v1.0.0").to_dict()

    def test_unknown_field(self):
        data = release("bufbuild/es", "v1.0.0").to_dict()
        data["extra"] = "x"
        with pytest.raises(MalformedManifest, match="unknown release fields: extra"):
            PluginRelease.from_dict(data)

    def test_missing_field(self):
        data = release("bufbuild/es", "v1.0.0").to_dict()
        del data["image_id"]
        with pytest.raises(MalformedManifest, match="missing release fields: image_id"):
            PluginRelease.from_dict(data)

    def test_mistyped_field(self):
        data = release("bufbuild/es", "v1.0.0").to_dict()
        data["version"] = 1
        with pytest.raises(MalformedManifest, match="version must be a string"):
            PluginRelease.from_dict(data)

    def test_bad_timestamp(self):
        data = release("bufbuild/es", "v1.0.0").to_dict()
        data["last_updated"] = "yesterday"
        with pytest.raises(MalformedManifest, match="invalid last_updated"):
            PluginRelease.from_dict(data)


class TestPluginReleases:
    def test_to_json_bytes_sorted(self):
        releases = PluginReleases(
            releases=(
                release("bufbuild/es", "v1.10.0"),
                release("bufbuild/es", "v1.9.0"),
                release("apple/swift", "v1.0.0"),
            )
        )
        content = releases.to_json_bytes()
        assert content.endswith(b"}\n")
        assert content.startswith(b'{\n  "releases": [\n    {\n      "name"')
        versions = [(r["name"], r["version"]) for r in json.loads(content)["releases"]]
        assert versions == [
            ("apple/swift", "v1.0.0"),
            ("bufbuild/es", "v1.9.0"),
            ("bufbuild/es", "v1.10.0"),
        ]

    def test_to_json_bytes_unsorted(self):
        releases = PluginReleases(releases=(release("b/b", "v1.0.0"), release("a/a", "v1.0.0")))
        names = [r["name"] for r in json.loads(releases.to_json_bytes(sort=False))["releases"]]
        assert names == ["b/b", "a/a"]

    def test_load_bytes_rejects_non_object(self):
        with pytest.raises(MalformedManifest):
            PluginReleases.load_bytes(b"[]")
        with pytest.raises(MalformedManifest):
            PluginReleases.load_bytes(b"{")

    def test_index_duplicates(self):
        releases = PluginReleases(releases=(release("a/a", "v1.0.0"), release("a/a", "v1.0.0")))
        with pytest.raises(DuplicateInReleases):
            releases.index()


class TestLoadPluginReleases:
    def test_bootstrap(self):
        assert load_plugin_releases(None) == PluginReleases()

    def test_unsigned_without_key(self):
        content = PluginReleases(releases=(release("a/a", "v1.0.0"),)).to_json_bytes()
        assert len(load_plugin_releases(content).releases) == 1

    def test_key_requires_signature(self, private_key):
        content = PluginReleases().to_json_bytes()
        with pytest.raises(SignatureMismatch, match="missing signature"):
            load_plugin_releases(content, None, private_key.public_key())

    def test_bad_signature(self, private_key):
        content = PluginReleases().to_json_bytes()
        other = PrivateKey.generate()
        from pants_buf_plugins._minisign import sign

        with pytest.raises(SignatureMismatch):
            load_plugin_releases(content, sign(other, content), private_key.public_key())

    def test_duplicates_rejected(self):
        doc = {"releases": [release("a/a", "v1.0.0").to_dict()] * 2}
        with pytest.raises(DuplicateInReleases):
            load_plugin_releases(json.dumps(doc).encode())


class TestWriteAndSign:
    def test_signed_manifest_loads(self, tmp_path, private_key):
        releases = [release("a/a", "v1.0.0")]
        path = write_plugin_releases(str(tmp_path), releases)
        signature_path = sign_plugin_releases(str(tmp_path), private_key)

        assert os.path.basename(path) == PLUGIN_RELEASES_FILE
        assert os.path.basename(signature_path) == PLUGIN_RELEASES_SIGNATURE_FILE
        assert sorted(os.listdir(tmp_path)) == [PLUGIN_RELEASES_FILE, PLUGIN_RELEASES_SIGNATURE_FILE]
        loaded = load_plugin_releases(
            (tmp_path / PLUGIN_RELEASES_FILE).read_bytes(),
            (tmp_path / PLUGIN_RELEASES_SIGNATURE_FILE).read_bytes(),
            private_key.public_key(),
        )
        assert list(loaded.releases) == releases

    def test_no_key_skips_signing(self, tmp_path):
        write_plugin_releases(str(tmp_path), [])
        assert sign_plugin_releases(str(tmp_path), None) is None
        assert os.listdir(tmp_path) == [PLUGIN_RELEASES_FILE]


class FakeImages:
    def __init__(self, image_ids):
        self.image_ids = image_ids

    def __call__(self, plugin):
        image_id = self.image_ids.get(plugin.release_name)
        if image_id is None:
            return None
        return f"ghcr.io/bufbuild/plugins-{plugin.owner}-{plugin.short_name}@sha256:d", image_id


class FakeArchives:
    def __init__(self):
        self.created = []

    def __call__(self, tmp_dir, plugin, registry_image, image_id):
        self.created.append(str(plugin))
        return f"sha256:zip-{plugin.short_name}"


def download_url(plugin, tag):
    return f"https://github.com/bufbuild/plugins/releases/download/{tag}/{plugin.short_name}.zip"


class TestCalculateNewReleasePlugins:
    @pytest.fixture
    def plugins(self, plugin_tree):
        plugin_tree.add("protocolbuffers/go", "v1.31.0")
        plugin_tree.add("connectrpc/go", "v1.11.0", deps=["protocolbuffers/go:v1.31.0"])
        return [
            plugin_tree.load("protocolbuffers/go", "v1.31.0"),
            plugin_tree.load("connectrpc/go", "v1.11.0"),
        ]

    def _incumbent(self, plugin, image_id="sha256:go"):
        return release(
            plugin.release_name,
            plugin.plugin_version,
            image_id=image_id,
            yaml_digest=calculate_digest(plugin.path),
        )

    def _calculate(self, plugins, current, images, archives, tmp_path):
        return calculate_new_release_plugins(
            plugins, current, "20221121.1", NOW, str(tmp_path), images, archives, download_url
        )

    def test_new_and_existing(self, plugins, tmp_path):
        current = PluginReleases(releases=(self._incumbent(plugins[0]),))
        images = FakeImages({"protocolbuffers/go": "sha256:go", "connectrpc/go": "sha256:connect"})
        archives = FakeArchives()

        releases = self._calculate(plugins, current, images, archives, tmp_path)

        assert archives.created == ["connectrpc/go:v1.11.0"]
        assert [(r.name, r.status) for r in releases] == [
            ("connectrpc/go", ReleaseStatus.NEW),
            ("protocolbuffers/go", ReleaseStatus.EXISTING),
        ]
        new = releases[0]
        assert new.zip_digest == "sha256:zip-go"
        assert new.image_id == "sha256:connect"
        assert new.release_tag == "20221121.1"
        assert new.last_updated == NOW.replace(microsecond=0)
        assert new.dependencies == ("buf.build/protocolbuffers/go:v1.31.0",)
        assert new.url.endswith("/20221121.1/go.zip")
        assert releases[1].release_tag == "20221101.1"

    def test_updated_image(self, plugins, tmp_path):
        current = PluginReleases(
            releases=(self._incumbent(plugins[0]), self._incumbent(plugins[1], "sha256:old"))
        )
        images = FakeImages({"protocolbuffers/go": "sha256:go", "connectrpc/go": "sha256:new"})
        releases = self._calculate(plugins, current, images, FakeArchives(), tmp_path)
        assert releases[0].status is ReleaseStatus.UPDATED
        assert releases[0].image_id == "sha256:new"

    def test_updated_yaml_digest(self, plugins, tmp_path):
        edited = release(
            plugins[1].release_name, plugins[1].plugin_version, image_id="sha256:connect", yaml_digest="sha256:old"
        )
        current = PluginReleases(releases=(self._incumbent(plugins[0]), edited))
        images = FakeImages({"protocolbuffers/go": "sha256:go", "connectrpc/go": "sha256:connect"})
        archives = FakeArchives()

        releases = self._calculate(plugins, current, images, archives, tmp_path)

        assert archives.created == ["connectrpc/go:v1.11.0"]
        assert [(r.name, r.status) for r in releases] == [
            ("connectrpc/go", ReleaseStatus.UPDATED),
            ("protocolbuffers/go", ReleaseStatus.EXISTING),
        ]
        assert releases[0].yaml_digest == calculate_digest(plugins[1].path)
        assert releases[0].release_tag == "20221121.1"

    def test_nothing_changed(self, plugins, tmp_path):
        current = PluginReleases(
            releases=(self._incumbent(plugins[0]), self._incumbent(plugins[1], "sha256:connect"))
        )
        images = FakeImages({"protocolbuffers/go": "sha256:go", "connectrpc/go": "sha256:connect"})
        archives = FakeArchives()
        assert self._calculate(plugins, current, images, archives, tmp_path) == []
        assert archives.created == []

    def test_unpublished_image_skipped(self, plugins, tmp_path):
        images = FakeImages({"connectrpc/go": "sha256:connect"})
        releases = self._calculate(plugins, PluginReleases(), images, FakeArchives(), tmp_path)
        assert [r.name for r in releases] == ["connectrpc/go"]

    def test_removed_plugin_carried_forward(self, plugins, tmp_path):
        gone = release("bufbuild/old", "v0.1.0")
        current = PluginReleases(releases=(gone,))
        images = FakeImages({"protocolbuffers/go": "sha256:go", "connectrpc/go": "sha256:connect"})
        releases = self._calculate(plugins, current, images, FakeArchives(), tmp_path)
        assert gone in releases
        assert len(releases) == 3

    def test_revision_unsupported(self, plugin_tree, tmp_path):
        plugin_tree.add("protocolbuffers/go", "v1.31.0")
        plugin_tree.add(
            "connectrpc/go", "v1.11.0", deps=["protocolbuffers/go:v1.31.0"], extra="    revision: 1"
        )
        plugin = plugin_tree.load("connectrpc/go", "v1.11.0")
        images = FakeImages({"connectrpc/go": "sha256:connect"})
        with pytest.raises(UnsupportedRevision):
            self._calculate([plugin], PluginReleases(), images, FakeArchives(), tmp_path)


class TestCalculateNextRelease:
    def test_first_release_of_day(self):
        assert calculate_next_release(NOW, None) == "20221121.1"
        assert calculate_next_release(NOW, "20221120.7") == "20221121.1"

    def test_increments(self):
        assert calculate_next_release(NOW, "20221121.9") == "20221121.10"

    def test_uses_utc_date(self):
        tz = datetime.timezone(datetime.timedelta(hours=-8))
        late = datetime.datetime(2022, 11, 20, 23, 0, tzinfo=tz)
        assert calculate_next_release(late, None) == "20221121.1"

    def test_malformed(self):
        with pytest.raises(MalformedReleaseTag):
            calculate_next_release(NOW, "20221121.x")

    @pytest.mark.parametrize("suffix", ["\u00b2", "\u0661"])
    def test_non_ascii_digits_malformed(self, suffix):
        with pytest.raises(MalformedReleaseTag):
            calculate_next_release(NOW, "20221121." + suffix)


class TestCreateReleaseBody:
    def test_sections(self, private_key):
        releases = [
            release("bufbuild/es", "v1.0.0", status=ReleaseStatus.NEW),
            release("bufbuild/go", "v1.1.0", status=ReleaseStatus.UPDATED),
            release("bufbuild/old", "v0.1.0"),
        ]
        body = create_release_body(
            "20221121.1", releases, private_key.public_key(), owner="bufbuild", repo="plugins"
        )
        assert body.startswith("# Buf Remote Plugins Release 20221121.1\n")
        assert "## New Plugins" in body
        assert "| bufbuild/es | v1.0.0 | [Download](https://example.com/bufbuild/es/v1.0.0.zip) |" in body
        assert "## Updated Plugins" in body
        assert "## Previously Released Plugins" in body
        assert (
            "https://github.com/bufbuild/plugins/releases/download/20221121.1/plugin-releases.json"
            in body
        )
        assert str(private_key.public_key()) in body

    def test_unsigned_new_only(self):
        body = create_release_body(
            "20221121.1",
            [release("bufbuild/es", "v1.0.0", status=ReleaseStatus.NEW)],
            None,
            owner="bufbuild",
            repo="plugins",
        )
        assert "Updated Plugins" not in body
        assert "Previously Released" not in body
        assert "minisign" not in body


class TestLatestPluginsAndDependencies:
    def test_latest_with_dependencies(self):
        releases = PluginReleases(
            releases=(
                release("connectrpc/es", "v1.0.0", deps=["buf.build/bufbuild/es:v1.0.0"]),
                release("bufbuild/es", "v1.0.0"),
                release("bufbuild/es", "v1.2.0"),
                release("bufbuild/es", "v0.9.0"),
                release("community/foo", "v1.0.0"),
                release("bufbuild/connect-go", "v1.0.0"),
            )
        )
        selected = latest_plugins_and_dependencies(releases)
        assert [(r.name, r.version) for r in selected] == [
            ("bufbuild/es", "v1.0.0"),
            ("bufbuild/es", "v1.2.0"),
            ("connectrpc/es", "v1.0.0"),
        ]

    def test_excluded_dependency_kept(self):
        releases = PluginReleases(
            releases=(
                release("acme/gen", "v1.0.0", deps=["buf.build/community/base:v1.0.0"]),
                release("community/base", "v1.0.0"),
            )
        )
        selected = latest_plugins_and_dependencies(releases)
        assert [r.name for r in selected] == ["community/base", "acme/gen"]

    def test_malformed_name(self):
        with pytest.raises(MalformedManifest):
            latest_plugins_and_dependencies(PluginReleases(releases=(release("nameonly", "v1.0.0"),)))
