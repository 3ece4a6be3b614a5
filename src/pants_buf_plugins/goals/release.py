"""buf-plugins-release goal: publish new and updated plugins as a GitHub release."""

from pants.engine.console import Console
from pants.engine.goal import Goal, GoalSubsystem
from pants.engine.rules import Get, collect_rules, goal_rule
from pants.option.option_types import BoolOption, StrOption

from pants_buf_plugins._config import ReleaseEnvironment
from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._github import GitHubReleaseClient
from pants_buf_plugins._http import http_session
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins._release_flow import (
    load_signing_keys,
    registry_archive_creator,
    registry_image_resolver,
    run_release,
)
from pants_buf_plugins.rules.discovery import DiscoveredPlugins, PluginsRequest
from pants_buf_plugins.subsystem import PluginReleaseSubsystem


class BufPluginsReleaseGoalSubsystem(GoalSubsystem):
    name = "buf-plugins-release"
    help = "Release every new or updated plugin, with a signed plugin-releases.json."

    dry_run = BoolOption(
        default=False,
        help="Prepare the release in a temporary directory without creating it on GitHub.",
    )

    commit = StrOption(
        default="",
        help="Commit the release tag is created from.",
    )


class BufPluginsReleaseGoal(Goal):
    subsystem_cls = BufPluginsReleaseGoalSubsystem
    environment_behavior = Goal.EnvironmentBehavior.LOCAL_ONLY


@goal_rule
async def run_buf_plugins_release(
    console: Console,
    subsystem: BufPluginsReleaseGoalSubsystem,
    plugin_subsystem: PluginReleaseSubsystem,
) -> BufPluginsReleaseGoal:
    discovered = await Get(DiscoveredPlugins, PluginsRequest(plugin_subsystem.plugins_dir))
    if not discovered.ok:
        console.print_stderr(discovered.error)
        return BufPluginsReleaseGoal(exit_code=2 if discovered.usage_error else 1)

    environment = ReleaseEnvironment.from_environ()
    cancellation = Cancellation()
    session = http_session(token=environment.github_token or None)
    try:
        private_key, public_key = load_signing_keys(
            plugin_subsystem.minisign_private_key,
            plugin_subsystem.minisign_public_key,
            environment.minisign_private_key_password,
        )
        client = GitHubReleaseClient(
            session,
            plugin_subsystem.github_release_owner,
            plugin_subsystem.github_repo,
            cancellation=cancellation,
        )
        outcome = run_release(
            discovered.plugins,
            client,
            resolve_image=registry_image_resolver(
                plugin_subsystem.github_owner, cancellation=cancellation
            ),
            create_archive=registry_archive_creator(cancellation=cancellation),
            private_key=private_key,
            public_key=public_key,
            commit=subsystem.commit,
            dry_run=subsystem.dry_run,
        )
    except PluginReleaseError as exc:
        console.print_stderr(f"failed to release: {exc}")
        return BufPluginsReleaseGoal(exit_code=1)
    finally:
        session.close()

    if not outcome.releases:
        console.print_stdout("No new or updated plugins to release.")
        return BufPluginsReleaseGoal(exit_code=0)

    for release in outcome.changed:
        console.print_stdout(f"{release.status.value}: {release.name}:{release.version}")
    if outcome.directory:
        console.print_stdout(f"[DRY RUN] Release {outcome.tag} prepared in {outcome.directory}")
    else:
        console.print_stdout(f"Published release {outcome.tag}")

    return BufPluginsReleaseGoal(exit_code=0)


def rules():
    return collect_rules()
