"""buf-plugins-discover goal: list plugins in dependency order."""

from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import Get, collect_rules, goal_rule
from pants.option.option_types import BoolOption, StrOption

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._plugin import get_base_dockerfiles
from pants_buf_plugins.rules.selection import SelectedPlugins, SelectedPluginsRequest
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsDiscoverGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-discover"
    help = "List plugins in dependency order, narrowed by PLUGINS (default: all)."

    plugins = StrOption(
        default="",
        help="Plugins to list, e.g. 'connect-go bufbuild/es:latest'. Overrides the PLUGINS env var.",
    )

    relative = BoolOption(
        default=False,
        help="Print paths relative to the plugins directory.",
    )

    base_dockerfiles = BoolOption(
        default=False,
        help="List base/base-build Dockerfiles in build order instead of plugins.",
    )


class BufPluginsDiscoverGoal(Goal):
    subsystem_cls = BufPluginsDiscoverGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_discover(
    console: Console,
    subsystem: BufPluginsDiscoverGoalSubsystem,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsDiscoverGoal:
    environment = ReleaseEnvironment.from_environ()
    selected = await Get(
        SelectedPlugins,
        SelectedPluginsRequest(
            root=plugin_subsystem.plugins_dir,
            plugins=environment.plugins_or(subsystem.plugins, default="all"),
        ),
    )
    if not selected.ok:
        console.print_stderr(selected.error)
        return BufPluginsDiscoverGoal(exit_code=2 if selected.usage_error else 1)

    if subsystem.base_dockerfiles:
        try:
            dockerfiles = get_base_dockerfiles(selected.root)
        except PluginReleaseError as exc:
            console.print_stderr(f"failed to find base Dockerfiles: {exc}")
            return BufPluginsDiscoverGoal(exit_code=1)
        for dockerfile in dockerfiles:
            console.print_stdout(dockerfile)
        return BufPluginsDiscoverGoal(exit_code=0)

    for plugin in selected.plugins:
        console.print_stdout(plugin.relpath if subsystem.relative else plugin.path)

    return BufPluginsDiscoverGoal(exit_code=0)


def rules():
    return collect_rules()
