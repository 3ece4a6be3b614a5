"""Tests for the base-image catalog and Dockerfile helpers."""

from __future__ import annotations

import pytest

from pants_buf_plugins._base_image import (
    BaseImages,
    distroless_family_name,
    find_base_image_dir,
    parse_base_image_content,
    parse_dockerfile_build_stages,
    split_image_reference,
)
from pants_buf_plugins._exceptions import (
    DuplicateBaseImage,
    DuplicateDistrolessFamily,
    MalformedManifest,
    PluginIOError,
)


class TestDistrolessFamilyName:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("gcr.io/distroless/java17-debian11", "gcr.io/distroless/java-debian"),
            ("gcr.io/distroless/cc-debian12", "gcr.io/distroless/cc-debian"),
            ("gcr.io/distroless/static", ""),
            ("debian", ""),
            ("python3", ""),
        ],
    )
    def test_family(self, name, expected):
        assert distroless_family_name(name) == expected


class TestSplitImageReference:
    @pytest.mark.parametrize(
        "image,expected",
        [
            ("debian:bookworm-20240110", ("debian", "bookworm-20240110")),
            ("golang:1.21.6-bookworm@sha256:abc", ("golang", "1.21.6-bookworm")),
            ("localhost:5000/img", ("localhost:5000/img", "")),
            ("localhost:5000/img:1", ("localhost:5000/img", "1")),
            ("scratch", ("scratch", "")),
        ],
    )
    def test_split(self, image, expected):
        assert split_image_reference(image) == expected


class TestParseBaseImageContent:
    def test_first_from(self):
        content = "# comment\nFROM --platform=$BUILDPLATFORM golang:1.21.6-bookworm AS build\nFROM scratch\n"
        assert parse_base_image_content(content, "Dockerfile.golang") == ("golang", "1.21.6-bookworm")

    def test_missing_tag(self):
        with pytest.raises(MalformedManifest, match="invalid FROM line"):
            parse_base_image_content("FROM debian\n", "Dockerfile.debian")

    def test_no_from(self):
        with pytest.raises(MalformedManifest, match="failed to detect base image"):
            parse_base_image_content("RUN true\n", "Dockerfile.x")


class TestBaseImages:
    def test_from_contents(self):
        images = BaseImages.from_contents(
            {
                "/d/Dockerfile.debian": "FROM debian:bookworm-20240110\n",
                "/d/Dockerfile.java": "FROM gcr.io/distroless/java21-debian12:latest\n",
                "/d/README.md": "FROM nothing:here\n",
            }
        )
        assert images.latest_versions == {
            "debian": "bookworm-20240110",
            "gcr.io/distroless/java21-debian12": "latest",
        }
        assert images.image_name_and_version("debian") == "debian:bookworm-20240110"
        assert images.image_name_and_version("alpine") == ""

    def test_distroless_family_resolves_to_tracked_name(self):
        images = BaseImages.from_contents(
            {"Dockerfile.java": "FROM gcr.io/distroless/java21-debian12:latest\n"}
        )
        assert (
            images.image_name_and_version("gcr.io/distroless/java17-debian11")
            == "gcr.io/distroless/java21-debian12:latest"
        )
        assert images.image_version("gcr.io/distroless/java17-debian11") == "latest"

    def test_duplicate_image(self):
        with pytest.raises(DuplicateBaseImage):
            BaseImages.from_contents(
                {"Dockerfile.a": "FROM debian:11\n", "Dockerfile.b": "FROM debian:12\n"}
            )

    def test_duplicate_family(self):
        with pytest.raises(DuplicateDistrolessFamily):
            BaseImages.from_contents(
                {
                    "Dockerfile.a": "FROM gcr.io/distroless/java17-debian11:latest\n",
                    "Dockerfile.b": "FROM gcr.io/distroless/java21-debian12:latest\n",
                }
            )

    def test_load(self, tmp_path):
        (tmp_path / "Dockerfile.debian").write_text("FROM debian:bookworm\n")
        (tmp_path / "Dockerfile.dir").mkdir()
        (tmp_path / "dependabot.yml").write_text("version: 2\n")
        assert BaseImages.load(str(tmp_path)).latest_versions == {"debian": "bookworm"}

    def test_load_missing(self, tmp_path):
        with pytest.raises(PluginIOError):
            BaseImages.load(str(tmp_path / "missing"))


class TestFindBaseImageDir:
    def test_walks_up(self, tmp_path):
        docker_dir = tmp_path / ".github" / "docker"
        docker_dir.mkdir(parents=True)
        nested = tmp_path / "plugins" / "a"
        nested.mkdir(parents=True)
        assert find_base_image_dir(str(nested)) == str(docker_dir)


class TestParseDockerfileBuildStages:
    def test_named_stages(self):
        content = (
            "FROM --platform=$BUILDPLATFORM golang:1.21 AS build\n"
            "RUN go build\n"
            "from scratch as final\n"
            "FROM scratch\n"
        )
        assert parse_dockerfile_build_stages(content) == ["build", "final"]
