"""buf-plugins-latest goal: print the latest plugins and their dependencies as JSON."""

from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import collect_rules, goal_rule

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._github import GitHubReleaseClient
from pants_buf_plugins._http import http_session
from pants_buf_plugins._minisign import PublicKey
from pants_buf_plugins._releases import PluginReleases, latest_plugins_and_dependencies
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsLatestGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-latest"
    help = (
        "Print the latest version of every supported plugin, plus its dependencies, "
        "from the plugin-releases.json of the latest release."
    )


class BufPluginsLatestGoal(Goal):
    subsystem_cls = BufPluginsLatestGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_latest(
    console: Console,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsLatestGoal:
    environment = ReleaseEnvironment.from_environ()
    session = http_session(token=environment.github_token or None)
    try:
        public_key = None
        if plugin_subsystem.minisign_public_key:
            public_key = PublicKey.from_file(plugin_subsystem.minisign_public_key)
        else:
            console.print_stderr("No minisign public key configured, plugin-releases.json is not verified.")
        client = GitHubReleaseClient(
            session, plugin_subsystem.github_release_owner, plugin_subsystem.github_repo
        )
        latest = client.get_latest_release()
        releases = client.download_plugin_releases(latest, public_key)
        selected = latest_plugins_and_dependencies(releases)
    except PluginReleaseError as exc:
        console.print_stderr(f"failed to determine latest plugins: {exc}")
        return BufPluginsLatestGoal(exit_code=1)
    finally:
        session.close()

    output = PluginReleases(releases=tuple(selected)).to_json_bytes(sort=False)
    console.print_stdout(output.decode("utf-8").rstrip("\n"))
    return BufPluginsLatestGoal(exit_code=0)


def rules():
    return collect_rules()
