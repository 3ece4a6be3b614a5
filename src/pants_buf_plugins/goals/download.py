"""buf-plugins-download goal: download and verify every archive of a release."""

from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import collect_rules, goal_rule
from pants.option.option_types import StrOption

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._download import download_plugin_archives
from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._github import GitHubReleaseClient
from pants_buf_plugins._http import http_session
from pants_buf_plugins._minisign import PublicKey
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsDownloadGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-download"
    help = "Download every plugin archive of a release, verifying each digest."

    release_tag = StrOption(
        default="",
        help="Release to download (default: latest release).",
    )

    download_dir = StrOption(
        default="",
        help="Directory receiving plugin-releases.json and the archives.",
    )


class BufPluginsDownloadGoal(Goal):
    subsystem_cls = BufPluginsDownloadGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_download(
    console: Console,
    subsystem: BufPluginsDownloadGoalSubsystem,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsDownloadGoal:
    if not subsystem.download_dir:
        console.print_stderr("--buf-plugins-download-download-dir is required.")
        return BufPluginsDownloadGoal(exit_code=2)

    environment = ReleaseEnvironment.from_environ()
    cancellation = Cancellation()
    api_session = http_session(token=environment.github_token or None)
    download_session = http_session()
    try:
        public_key = None
        if plugin_subsystem.minisign_public_key:
            public_key = PublicKey.from_file(plugin_subsystem.minisign_public_key)
        client = GitHubReleaseClient(
            api_session,
            plugin_subsystem.github_release_owner,
            plugin_subsystem.github_repo,
            cancellation=cancellation,
        )
        if subsystem.release_tag:
            release = client.get_release_by_tag(subsystem.release_tag)
        else:
            release = client.get_latest_release()
        releases = client.download_plugin_releases(release, public_key, subsystem.download_dir)
        downloaded = download_plugin_archives(
            releases.releases,
            subsystem.download_dir,
            download_session,
            cancellation=cancellation,
        )
    except PluginReleaseError as exc:
        console.print_stderr(f"failed to download plugins: {exc}")
        return BufPluginsDownloadGoal(exit_code=1)
    finally:
        api_session.close()
        download_session.close()

    console.print_stdout(
        f"Downloaded {len(downloaded)} of {len(releases.releases)} archives "
        f"from {release.tag_name} into {subsystem.download_dir}"
    )
    return BufPluginsDownloadGoal(exit_code=0)


def rules():
    return collect_rules()
