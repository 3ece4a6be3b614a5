"""buf-plugins-package goal: archive locally built plugin images."""

from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import Get, collect_rules, goal_rule
from pants.option.option_types import StrOption

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins._release_flow import package_plugins
from pants_buf_plugins.rules.selection import SelectedPlugins, SelectedPluginsRequest
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsPackageGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-package"
    help = "Create release archives (buf.plugin.yaml + image.tar) for locally built plugin images."

    plugins = StrOption(
        default="",
        help="Plugins to package, e.g. 'connect-go bufbuild/es:latest' or 'all'. Overrides the PLUGINS env var.",
    )

    output_dir = StrOption(
        default="dist/plugins",
        help="Directory receiving the archives.",
    )


class BufPluginsPackageGoal(Goal):
    subsystem_cls = BufPluginsPackageGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_package(
    console: Console,
    subsystem: BufPluginsPackageGoalSubsystem,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsPackageGoal:
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
        return BufPluginsPackageGoal(exit_code=2 if selected.usage_error else 1)
    if not selected.plugins:
        console.print_stderr("No plugins to package.")
        return BufPluginsPackageGoal(exit_code=0)

    try:
        archives = package_plugins(
            selected.plugins,
            subsystem.output_dir,
            plugin_subsystem.resolved_docker_org(),
            cancellation=Cancellation(),
        )
    except PluginReleaseError as exc:
        console.print_stderr(f"failed to create plugin zips: {exc}")
        return BufPluginsPackageGoal(exit_code=1)

    for path, digest in archives:
        console.print_stdout(f"Packaged {path} ({digest})")

    return BufPluginsPackageGoal(exit_code=0)


def rules():
    return collect_rules()
