"""buf-plugins-push goal: push built plugin images to their registry."""

from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import Get, collect_rules, goal_rule
from pants.option.option_types import StrOption

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._docker import push_plugin_image
from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins.rules.selection import SelectedPlugins, SelectedPluginsRequest
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsPushGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-push"
    help = "Push Docker images of the plugins selected by PLUGINS."

    plugins = StrOption(
        default="",
        help="Plugins to push, e.g. 'connect-go bufbuild/es:latest' or 'all'. Overrides the PLUGINS env var.",
    )


class BufPluginsPushGoal(Goal):
    subsystem_cls = BufPluginsPushGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_push(
    console: Console,
    subsystem: BufPluginsPushGoalSubsystem,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsPushGoal:
    environment = ReleaseEnvironment.from_environ()
    selected = await Get(
        SelectedPlugins,
        SelectedPluginsRequest(
            root=plugin_subsystem.plugins_dir,
            plugins=environment.plugins_or(subsystem.plugins),
        ),
    )
    if not selected.ok:
        console.print_stderr(selected.error)
        return BufPluginsPushGoal(exit_code=2 if selected.usage_error else 1)

    org = plugin_subsystem.resolved_docker_org()
    cancellation = Cancellation()
    for plugin in selected.plugins:
        try:
            image = push_plugin_image(plugin, org, cancellation=cancellation)
        except PluginReleaseError as exc:
            console.print_stderr(f"docker push of plugin {plugin} failed: {exc}")
            return BufPluginsPushGoal(exit_code=1)
        console.print_stdout(f"Pushed {image}")

    return BufPluginsPushGoal(exit_code=0)


def rules():
    return collect_rules()
