"""Removal of resources created by a validation run.

Only objects this run created are deleted: the resource group (which holds
everything except the AD application) and the AD application. Pre-supplied
objects are left alone. Cleanup is best effort; a failed delete is logged and
the run's own outcome stands.
"""

import logging
from collections.abc import Callable

import click

from adeval.command_runner import CommandRunner
from adeval.exceptions import CommandError
from adeval.models import ResourceSet

logger = logging.getLogger(__name__)


class TeardownManager:
    """Delete or describe the deletion of a run's resources."""

    def __init__(self, runner: CommandRunner, echo: Callable[[str], None] = click.echo):
        self.runner = runner
        self.echo = echo

    @staticmethod
    def manual_commands(resources: ResourceSet) -> list[str]:
        """Commands a person can run to delete what this run created."""
        commands = []
        if resources.resource_group_created and resources.resource_group:
            commands.append(f"az group delete -n {resources.resource_group} --no-wait")
        if resources.app_created and resources.app_id:
            commands.append(f"az ad app delete --id {resources.app_id}")
        return commands

    def print_delete_instructions(self, resources: ResourceSet) -> None:
        commands = self.manual_commands(resources)
        if not commands:
            return
        self.echo("In case of test failure, resources can be deleted as follows:")
        for command in commands:
            self.echo(command)

    def delete_commands(self, resources: ResourceSet) -> list[list[str]]:
        commands = []
        if resources.resource_group_created and resources.resource_group:
            commands.append(["group", "delete", "-n", resources.resource_group, "--no-wait", "--yes"])
        if resources.app_created and resources.app_id:
            commands.append(["ad", "app", "delete", "--id", resources.app_id])
        return commands

    def teardown(self, resources: ResourceSet, auto_delete: bool = True) -> list[str]:
        """Delete created resources, or print how to delete them.

        Args:
            resources: Resources recorded during the run
            auto_delete: Issue delete commands when True, print them otherwise

        Returns:
            Errors from delete commands that failed (empty when all succeeded)
        """
        if not auto_delete:
            self.print_delete_instructions(resources)
            return []

        errors: list[str] = []
        for args in self.delete_commands(resources):
            label = " ".join(args[:2])
            try:
                logger.info(f"Deleting: az {' '.join(args)}")
                self.runner.invoke(args)
            except CommandError as e:
                logger.warning(f"Cleanup step '{label}' failed: {e}")
                errors.append(str(e))

        if errors:
            self.echo("Automatic cleanup was incomplete. Remaining resources can be deleted with:")
            for command in self.manual_commands(resources):
                self.echo(command)
        return errors


__all__ = ["TeardownManager"]
