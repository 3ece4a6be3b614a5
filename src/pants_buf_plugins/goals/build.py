"""buf-plugins-build goal: build plugin images with docker buildx."""

from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import Get, collect_rules, goal_rule
from pants.option.option_types import StrListOption, StrOption

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._docker import build_plugins
from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins.rules.selection import SelectedPlugins, SelectedPluginsRequest
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsBuildGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-build"
    help = "Build Docker images for the plugins selected by PLUGINS."

    plugins = StrOption(
        default="",
        help="Plugins to build, e.g. 'connect-go bufbuild/es:latest' or 'all'. Overrides the PLUGINS env var.",
    )

    extra_args = StrListOption(
        default=[],
        help="Extra arguments passed to every 'docker buildx build' invocation.",
    )


class BufPluginsBuildGoal(Goal):
    subsystem_cls = BufPluginsBuildGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_build(
    console: Console,
    subsystem: BufPluginsBuildGoalSubsystem,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsBuildGoal:
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
        return BufPluginsBuildGoal(exit_code=2 if selected.usage_error else 1)
    if not selected.plugins:
        console.print_stderr("No plugins selected (set PLUGINS or --buf-plugins-build-plugins).")
        return BufPluginsBuildGoal(exit_code=0)

    try:
        images = build_plugins(
            selected.plugins,
            plugin_subsystem.resolved_docker_org(),
            max_parallel=plugin_subsystem.max_parallel_builds,
            cache_dir=plugin_subsystem.build_cache_dir,
            extra_args=tuple(subsystem.extra_args),
            cancellation=Cancellation(),
        )
    except PluginReleaseError as exc:
        console.print_stderr(f"failed to build: {exc}")
        return BufPluginsBuildGoal(exit_code=1)

    for image in images:
        console.print_stdout(f"Built {image}")

    return BufPluginsBuildGoal(exit_code=0)


def rules():
    return collect_rules()
