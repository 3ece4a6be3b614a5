"""buf-plugins-fetch goal: create version directories for new upstream releases."""

import os

from pants.base.build_environment import get_buildroot
from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import Get, collect_rules, goal_rule
from pants.option.option_types import BoolOption

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._fetch import FetchClient
from pants_buf_plugins._fetcher import post_process_created, run_fetch
from pants_buf_plugins._http import http_session
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins.rules.base_images import BaseImagesRequest, BaseImagesResult
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsFetchGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-fetch"
    help = "Check every source.yaml for a newer upstream release and create its version directory."

    post_process = BoolOption(
        default=True,
        help="Refresh lock files of created plugins and run their tests afterwards.",
    )


class BufPluginsFetchGoal(Goal):
    subsystem_cls = BufPluginsFetchGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_fetch(
    console: Console,
    subsystem: BufPluginsFetchGoalSubsystem,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsFetchGoal:
    base_images = await Get(BaseImagesResult, BaseImagesRequest())
    if not base_images.ok:
        console.print_stderr(f"failed to load base images: {base_images.error}")
        return BufPluginsFetchGoal(exit_code=1)

    buildroot = get_buildroot()
    environment = ReleaseEnvironment.from_environ()
    cancellation = Cancellation()
    session = http_session()
    github_session = http_session(token=environment.github_token or None)
    client = FetchClient(session, github_session=github_session, cancellation=cancellation)
    try:
        created = run_fetch(
            os.path.join(buildroot, plugin_subsystem.plugins_dir),
            client,
            base_images=base_images.catalog,
        )
        if subsystem.post_process:
            post_process_created(created, cwd=buildroot, cancellation=cancellation)
    except PluginReleaseError as exc:
        console.print_stderr(f"failed to fetch versions: {exc}")
        return BufPluginsFetchGoal(exit_code=1)
    finally:
        session.close()
        github_session.close()

    if not created:
        console.print_stdout("No new plugin versions found.")
    for plugin in created:
        console.print_stdout(f"Created {plugin.ref} (from {plugin.previous_version})")

    return BufPluginsFetchGoal(exit_code=0)


def rules():
    return collect_rules()
