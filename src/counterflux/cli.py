"""CLI for counterflux: run a QA/Dev workflow or show configuration."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .backends import ClaudeCLIBackend, WorkflowCallbacks
from .config import Config, load_config
from .errors import CounterfluxError
from .logging_config import setup_logging
from .models import AgentRole, Severity, SpecStatus
from .parallel import CoordinatorEvent, CoordinatorStatus, ParallelCoordinator
from .runners import BackendActionExecutor, SubprocessCommandRunner
from .sequential import EventType, SequentialWorkflowMachine, WorkflowEvent, WorkflowState
from .signals import parse_signal
from .visualizer import render_context, truncate

logger = logging.getLogger(__name__)

console = Console()

SEVERITY_STYLES = {
	Severity.INFO: "green",
	Severity.WARNING: "yellow",
	Severity.ERROR: "bold red",
}


class ConsoleCallbacks(WorkflowCallbacks):
	"""Approval prompts and notifications on the terminal."""

	def __init__(self, console: Console, assume_yes: bool = False):
		super().__init__(
			ask_approval=self._ask,
			notify_user=self._notify,
			on_error=self._error,
		)
		self.console = console
		self.assume_yes = assume_yes

	async def _ask(self, message: str) -> bool:
		if self.assume_yes:
			self.console.print(f"[cyan]?[/cyan] {message} [dim](yes)[/dim]")
			return True
		return await asyncio.to_thread(Confirm.ask, message, console=self.console)

	def _notify(self, message: str, severity: Severity) -> None:
		style = SEVERITY_STYLES[severity]
		self.console.print(f"[{style}]{message}[/{style}]")

	def _error(self, error: Exception, source: str) -> None:
		self.console.print(f"[bold red]{source} error:[/bold red] {error}")


def _build_backend(config: Config, workspace: Path) -> ClaudeCLIBackend:
	return ClaudeCLIBackend(
		workspace_path=str(workspace),
		command=config.claude_command,
		timeout=config.claude_timeout,
	)


def resolve_in_workspace(workspace: Path, path: Optional[str]) -> Optional[str]:
	"""Make a path reported by an agent absolute, relative to the workspace."""
	if not path:
		return path
	candidate = Path(path)
	return str(candidate if candidate.is_absolute() else workspace / candidate)


# ==================== Sequential ====================

async def run_sequential(
	prompt: str,
	workspace: Path,
	config: Config,
	callbacks: WorkflowCallbacks,
) -> WorkflowState:
	"""Drive the ping-pong machine, turning each reply's marker into the next event."""
	backend = _build_backend(config, workspace)
	runner = SubprocessCommandRunner(str(workspace), timeout=config.command_timeout)
	machine = SequentialWorkflowMachine(
		backend,
		runner,
		callbacks=callbacks,
		test_commands=config.test_commands,
		max_iterations=config.max_iterations,
	)

	queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue()

	def relay(role: AgentRole, reply: str) -> None:
		event = parse_signal(reply)
		if event is None:
			logger.warning(f"{role.value} reply had no completion marker")
			event = WorkflowEvent.error(f"{role.value} reply had no completion marker")
		else:
			event.spec_path = resolve_in_workspace(workspace, event.spec_path)
			event.test_files = [resolve_in_workspace(workspace, path) for path in event.test_files]
		queue.put_nowait(event)

	machine.events.on("reply_received", relay)
	machine.events.on(
		"state_changed",
		lambda old, new: console.print(f"[dim]{old.value} ->[/dim] [bold]{new.value}[/bold]"),
	)

	await machine.start(prompt, str(workspace))

	while not machine.is_finished and machine.get_state() != WorkflowState.IDLE:
		if not queue.empty():
			await machine.handle_event(queue.get_nowait())
			continue

		if machine.get_state() == WorkflowState.PAUSED:
			if await callbacks.ask_approval("Maximum iterations reached. Continue implementing?"):
				await machine.handle_event(WorkflowEvent(EventType.USER_CONTINUE))
			else:
				await machine.handle_event(WorkflowEvent(EventType.USER_ABORT))
			continue

		# Nothing queued and no pause: the spec was not approved
		if await callbacks.ask_approval("Regenerate the specification?"):
			await machine.abort()
			machine.reset()
			await machine.start(prompt, str(workspace))
		else:
			await machine.abort()

	context = machine.get_context()
	if context is not None:
		render_context(context, console=console, title=f"Sequential workflow: {machine.get_state().value}")
	return machine.get_state()


# ==================== Parallel ====================

async def run_parallel(
	prompt: str,
	workspace: Path,
	config: Config,
	callbacks: WorkflowCallbacks,
) -> CoordinatorStatus:
	"""Run both roles concurrently, asking the user to freeze and lock the spec."""
	backend = _build_backend(config, workspace)
	runner = SubprocessCommandRunner(str(workspace), timeout=config.command_timeout)
	executor = BackendActionExecutor(backend, runner, config.test_commands)
	coordinator = ParallelCoordinator(
		str(workspace),
		backend,
		executor,
		callbacks=callbacks,
		max_iterations=config.max_iterations,
		loop_interval_ms=config.loop_interval_ms,
	)
	coordinator.on(
		CoordinatorEvent.STATUS_CHANGED,
		lambda status: console.print(f"[dim]coordinator:[/dim] [bold]{status.value}[/bold]"),
	)
	coordinator.on(
		CoordinatorEvent.TEST_COMPLETED,
		lambda result: console.print(
			f"[{'green' if result.passed else 'red'}]Tests "
			f"{'passed' if result.passed else 'failed'}[/] ({result.triggered_by.value})"
		),
	)

	await coordinator.start_parallel_mode(prompt)

	freeze_asked = False
	lock_asked = False
	poll = config.loop_interval_ms / 1000

	while True:
		status = coordinator.get_status()
		context = coordinator.get_context()

		if status == CoordinatorStatus.PAUSED:
			if await callbacks.ask_approval("Workflow paused. Resume?"):
				coordinator.resume_workflow()
				continue
			await coordinator.abort()
			break
		if status != CoordinatorStatus.RUNNING or context is None:
			break

		if context.spec_content and context.spec_status == SpecStatus.DRAFT and not freeze_asked:
			freeze_asked = True
			console.print(Panel(truncate(context.spec_content, 400), title="Draft spec", border_style="yellow"))
			if not await callbacks.ask_approval("Freeze the spec and start tests and implementation?"):
				await coordinator.abort()
				break
			await coordinator.freeze_spec()

		last = context.last_test_result
		if (
			context.spec_status == SpecStatus.FROZEN
			and last is not None and last.passed
			and not lock_asked
		):
			lock_asked = True
			if await callbacks.ask_approval("Tests pass. Lock the spec?"):
				coordinator.lock_spec()

		await asyncio.sleep(poll)

	final = await coordinator.wait_until_finished()
	context = coordinator.get_context()
	if context is not None:
		render_context(context, console=console, title=f"Parallel workflow: {final.value}")
	return final


# ==================== Commands ====================

def cmd_run(args: argparse.Namespace) -> None:
	"""Run a workflow for a prompt."""
	config = load_config()
	if args.max_iterations is not None:
		config.max_iterations = args.max_iterations
	if args.interval_ms is not None:
		config.loop_interval_ms = args.interval_ms

	workspace = Path(args.workspace).resolve()
	if not workspace.is_dir():
		console.print(f"[red]Workspace not found: {workspace}[/red]")
		sys.exit(1)

	callbacks = ConsoleCallbacks(console, assume_yes=args.yes)
	console.print(Panel(
		f"[bold]Prompt:[/bold] {args.prompt}\n"
		f"[bold]Workspace:[/bold] {workspace}\n"
		f"[bold]Mode:[/bold] {args.mode}  |  [bold]Max iterations:[/bold] {config.max_iterations}",
		title="counterflux",
		border_style="cyan",
	))

	try:
		if args.mode == "parallel":
			final = asyncio.run(run_parallel(args.prompt, workspace, config, callbacks))
			ok = final == CoordinatorStatus.COMPLETED
		else:
			state = asyncio.run(run_sequential(args.prompt, workspace, config, callbacks))
			ok = state == WorkflowState.COMPLETED
	except CounterfluxError as e:
		console.print(f"[bold red]Error:[/bold red] {e}")
		sys.exit(1)
	except KeyboardInterrupt:
		console.print("[yellow]Interrupted[/yellow]")
		sys.exit(130)

	if not ok:
		sys.exit(1)


def cmd_config(args: argparse.Namespace) -> None:
	"""Show the effective configuration."""
	config = load_config()

	table = Table(title="counterflux configuration")
	table.add_column("Setting", style="cyan")
	table.add_column("Value")

	table.add_row("config_dir", str(config.config_dir))
	table.add_row("data_dir", str(config.data_dir))
	table.add_row("log_dir", str(config.log_dir))
	table.add_row("max_iterations", str(config.max_iterations))
	table.add_row("loop_interval_ms", str(config.loop_interval_ms))
	table.add_row("test_commands", "; ".join(config.test_commands))
	table.add_row("claude_command", config.claude_command)
	table.add_row("claude_timeout", f"{config.claude_timeout}s")
	table.add_row("command_timeout", f"{config.command_timeout}s")
	table.add_row("log_level", config.log_level)

	console.print(table)
	toml_path = config.config_dir / "config.toml"
	state = "found" if toml_path.exists() else "not found"
	console.print(f"[dim]config.toml: {toml_path} ({state})[/dim]")


def main() -> None:
	"""CLI entry point."""
	load_dotenv()

	parser = argparse.ArgumentParser(
		prog="counterflux",
		description="Adversarial QA/Dev agent workflows: spec, tests, then code",
	)
	subparsers = parser.add_subparsers(dest="command")

	# run
	run_parser = subparsers.add_parser("run", help="Run a workflow for a prompt")
	run_parser.add_argument("prompt", help="What to build")
	run_parser.add_argument("--workspace", default=".", help="Project directory (default: current)")
	run_parser.add_argument(
		"--mode",
		choices=["sequential", "parallel"],
		default="sequential",
		help="Turn-based or concurrent roles (default: sequential)",
	)
	run_parser.add_argument("--max-iterations", type=int, default=None, help="Iteration budget")
	run_parser.add_argument("--interval-ms", type=int, default=None, help="Parallel tick interval")
	run_parser.add_argument("-y", "--yes", action="store_true", help="Approve every prompt")
	run_parser.set_defaults(func=cmd_run)

	# config
	config_parser = subparsers.add_parser("config", help="Show effective configuration")
	config_parser.set_defaults(func=cmd_config)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	config = load_config()
	setup_logging(level=config.log_level, log_dir=str(config.log_dir))

	args.func(args)


if __name__ == "__main__":
	main()
