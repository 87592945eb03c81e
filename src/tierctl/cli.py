"""tierctl command-line interface.

Commands:
    tierctl plan STACK       Show what apply would change
    tierctl apply STACK      Converge resources to the stack file
    tierctl destroy          Destroy every tracked resource
    tierctl state list       List tracked resources
    tierctl state show ID    Show one state record
    tierctl autoscale STACK  Run the autoscaling controllers of a stack
"""

import logging
import signal
import sys
import threading
from pathlib import Path

import click

from tierctl import __version__
from tierctl.autoscaling.service import AutoscalingService
from tierctl.autoscaling.sources import JsonFileSignals
from tierctl.config import TierctlConfig, load_config
from tierctl.engine.models import ApplyResult, ExitCode
from tierctl.engine.reconciler import Reconciler
from tierctl.errors import ConfigError, TierctlError
from tierctl.providers import load_provider
from tierctl.reporter import Reporter
from tierctl.stack_file import load_stack

logger = logging.getLogger(__name__)


class _Context:
    """Settings shared by all subcommands."""

    def __init__(self, config: TierctlConfig, provider_spec: str | None, verbose: bool):
        self.config = config
        self.provider_spec = provider_spec
        self.verbose = verbose
        self.reporter = Reporter(verbose=verbose)
        self._reconciler: Reconciler | None = None

    @property
    def state_dir(self) -> Path:
        return self.config.engine.state_path.parent

    @property
    def reconciler(self) -> Reconciler:
        if self._reconciler is None:
            provider = load_provider(self.provider_spec, self.state_dir)
            self._reconciler = Reconciler.from_config(provider, self.config.engine)
        return self._reconciler


def _fail(error: TierctlError) -> None:
    """Print an error and exit with the matching code."""
    if isinstance(error, ConfigError):
        click.echo(f"Config error: {error}", err=True)
        sys.exit(int(ExitCode.CONFIG_ERROR))
    click.echo(f"Error: {error}", err=True)
    sys.exit(int(ExitCode.PARTIAL_FAILURE))


def _apply_with_cancellation(obj: _Context, plan) -> ApplyResult:
    """Apply a plan; the first Ctrl-C stops starting new items."""
    cancel_event = threading.Event()

    def handle_interrupt(signum, frame):
        if not cancel_event.is_set():
            click.echo("\nInterrupt received: finishing in-flight items, then stopping...", err=True)
            cancel_event.set()

    previous = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        return obj.reconciler.apply(plan, cancel_event=cancel_event, progress=obj.reporter.report_item)
    finally:
        signal.signal(signal.SIGINT, previous)


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--config", "config_path", help="Config file path", type=click.Path())
@click.option("--state", "state_path", help="State file path", type=click.Path())
@click.option("--provider", "provider_spec", help="Provider import path (module:Class)", type=str)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: str | None,
    state_path: str | None,
    provider_spec: str | None,
    verbose: bool,
) -> None:
    """tierctl - reconcile a load-balanced, auto-scaling web tier.

    \b
    CONFIGURATION:
        Config file: ~/.tierctl/config.toml
        State file:  ~/.tierctl/state.json

    For help on any command: tierctl <command> --help
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    try:
        config = load_config(config_path)
    except ConfigError as e:
        _fail(e)
    if state_path:
        config.engine.state_path = Path(state_path).expanduser()
    ctx.obj = _Context(config, provider_spec, verbose)


@main.command(name="plan")
@click.argument("stack_file", type=click.Path())
@click.option(
    "--detailed-exitcode",
    is_flag=True,
    help="Exit with 3 when there are no changes",
)
@click.pass_obj
def plan_command(obj: _Context, stack_file: str, detailed_exitcode: bool):
    """Show the changes needed to match STACK_FILE.

    \b
    Examples:
        tierctl plan web.toml
        tierctl plan web.toml --detailed-exitcode
    """
    try:
        stack = load_stack(stack_file, obj.config.autoscaling.default_target_value)
        plan = obj.reconciler.plan(stack.resources)
    except TierctlError as e:
        _fail(e)

    obj.reporter.report_plan(plan)
    if detailed_exitcode and not plan.has_changes:
        sys.exit(int(ExitCode.NO_CHANGES))


@main.command(name="apply")
@click.argument("stack_file", type=click.Path())
@click.option("--yes", "-y", is_flag=True, help="Apply without confirmation")
@click.pass_obj
def apply_command(obj: _Context, stack_file: str, yes: bool):
    """Converge resources to STACK_FILE.

    Exits 1 when some resources failed; the State Store still records every
    resource that was applied.
    """
    try:
        stack = load_stack(stack_file, obj.config.autoscaling.default_target_value)
        plan = obj.reconciler.plan(stack.resources)
    except TierctlError as e:
        _fail(e)

    obj.reporter.report_plan(plan)
    if not plan.has_changes:
        return
    if not yes and not click.confirm("\nApply these changes?", default=False):
        click.echo("Apply cancelled.")
        return

    try:
        result = _apply_with_cancellation(obj, plan)
    except TierctlError as e:
        _fail(e)
    obj.reporter.report_apply(result)
    if result.exit_code != ExitCode.SUCCESS:
        sys.exit(int(result.exit_code))


@main.command(name="destroy")
@click.option("--yes", "-y", is_flag=True, help="Destroy without confirmation")
@click.pass_obj
def destroy_command(obj: _Context, yes: bool):
    """Destroy every resource tracked in state, dependents first."""
    try:
        plan = obj.reconciler.plan_destroy()
    except TierctlError as e:
        _fail(e)

    obj.reporter.report_plan(plan)
    if not plan.has_changes:
        return
    if not yes and not click.confirm("\nDestroy all resources?", default=False):
        click.echo("Destroy cancelled.")
        return

    try:
        result = _apply_with_cancellation(obj, plan)
    except TierctlError as e:
        _fail(e)
    obj.reporter.report_apply(result)
    if result.exit_code != ExitCode.SUCCESS:
        sys.exit(int(result.exit_code))


@main.group(name="state")
def state_group():
    """Inspect the State Store."""


@state_group.command(name="list")
@click.pass_obj
def state_list_command(obj: _Context):
    """List tracked resources."""
    try:
        records = obj.reconciler.state.all()
    except TierctlError as e:
        _fail(e)
    obj.reporter.report_state(records)


@state_group.command(name="show")
@click.argument("resource_id")
@click.pass_obj
def state_show_command(obj: _Context, resource_id: str):
    """Show the state record of RESOURCE_ID."""
    try:
        record = obj.reconciler.state.get(resource_id)
    except TierctlError as e:
        _fail(e)
    if record is None:
        click.echo(f"Error: '{resource_id}' is not tracked in state", err=True)
        sys.exit(int(ExitCode.PARTIAL_FAILURE))
    obj.reporter.report_record(record)


@main.command(name="autoscale")
@click.argument("stack_file", type=click.Path())
@click.option(
    "--signals",
    "signals_path",
    help="JSON file with metric and health readings (default: <state dir>/signals.json)",
    type=click.Path(),
)
@click.option("--once", is_flag=True, help="Evaluate every policy once and exit")
@click.pass_obj
def autoscale_command(obj: _Context, stack_file: str, signals_path: str | None, once: bool):
    """Run the autoscaling controllers for the policies in STACK_FILE.

    \b
    Examples:
        tierctl autoscale web.toml                 # run until Ctrl-C
        tierctl autoscale web.toml --once          # single evaluation
    """
    try:
        stack = load_stack(stack_file, obj.config.autoscaling.default_target_value)
        if not stack.policies:
            raise ConfigError(f"No [[policy]] entries in {stack_file}")
        signals = JsonFileSignals(signals_path or obj.state_dir / "signals.json")
        service = AutoscalingService(
            obj.reconciler, stack.policies, signals, signals, obj.config.autoscaling
        )
    except TierctlError as e:
        _fail(e)

    if once:
        service.evaluate_all()
        for status in service.get_status():
            click.echo(f"{status.group_id}: {status.last_action or 'no data'} ({status.phase.value})")
        return

    click.echo(
        f"Autoscaling {len(stack.policies)} group(s) every "
        f"{obj.config.autoscaling.evaluation_interval:.0f}s. Press Ctrl-C to stop."
    )
    service.run_forever()


if __name__ == "__main__":
    main()
