"""buf-plugins-changed goal: print plugins affected by the modified files of a CI run."""

from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import Get, collect_rules, goal_rule

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._selection import format_plugins_env
from pants_buf_plugins.rules.selection import SelectedPlugins, SelectedPluginsRequest
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsChangedGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-changed"
    help = (
        "Print the plugins affected by ANY_MODIFIED / ALL_MODIFIED_FILES "
        "as a PLUGINS value."
    )


class BufPluginsChangedGoal(Goal):
    subsystem_cls = BufPluginsChangedGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_changed(
    console: Console,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsChangedGoal:
    environment = ReleaseEnvironment.from_environ()
    selected = await Get(
        SelectedPlugins,
        SelectedPluginsRequest(
            root=plugin_subsystem.plugins_dir,
            changed_files=True,
            any_modified=environment.any_modified,
            all_modified_files=environment.all_modified_files,
        ),
    )
    if not selected.ok:
        console.print_stderr(selected.error)
        return BufPluginsChangedGoal(exit_code=2 if selected.usage_error else 1)

    console.print_stdout(format_plugins_env(selected.plugins))
    return BufPluginsChangedGoal(exit_code=0)


def rules():
    return collect_rules()
