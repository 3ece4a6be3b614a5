"""Base-image catalog rule: .github/docker/Dockerfile.* to latest image tags."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from pants.base.build_environment import get_buildroot
from pants.engine.fs import DigestContents, PathGlobs
from pants.engine.rules import Get, collect_rules, rule
from pants.util.frozendict import FrozenDict

from pants_buf_plugins._base_image import BaseImages
from pants_buf_plugins._exceptions import PluginReleaseError

logger = logging.getLogger(__name__)

DEFAULT_BASE_IMAGE_DIR = ".github/docker"


# =============================================================================
# Request / Result types
# =============================================================================


@dataclass(frozen=True)
class BaseImagesRequest:
    """Request to load the base-image catalog from ``directory`` (build-root relative)."""

    directory: str = DEFAULT_BASE_IMAGE_DIR


@dataclass(frozen=True)
class BaseImagesResult:
    latest_versions: FrozenDict[str, str] = FrozenDict()
    distroless_families: FrozenDict[str, str] = FrozenDict()
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error

    @property
    def catalog(self) -> BaseImages:
        return BaseImages(
            latest_versions=dict(self.latest_versions),
            distroless_families=dict(self.distroless_families),
        )


# =============================================================================
# Rules
# =============================================================================


@rule(desc="Load base image catalog")
async def load_base_images(request: BaseImagesRequest) -> BaseImagesResult:
    directory = os.path.normpath(request.directory)
    contents = await Get(DigestContents, PathGlobs([f"{directory}/Dockerfile*"]))
    buildroot = get_buildroot()
    files = {
        os.path.join(buildroot, fc.path): fc.content.decode("utf-8")
        for fc in contents
        if os.path.dirname(fc.path) == directory
    }
    try:
        catalog = BaseImages.from_contents(files)
    except (PluginReleaseError, UnicodeDecodeError) as exc:
        return BaseImagesResult(error=f"{directory}: {exc}")

    logger.info("loaded %d base images from %s", len(catalog.latest_versions), directory)
    return BaseImagesResult(
        latest_versions=FrozenDict(catalog.latest_versions),
        distroless_families=FrozenDict(catalog.distroless_families),
    )


def rules():
    return collect_rules()
