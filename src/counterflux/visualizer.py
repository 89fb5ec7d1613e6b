"""Rich views of a workflow context."""

from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .models import SpecStatus, TestResult, WorkflowContext

SPEC_STATUS_STYLES = {
	SpecStatus.DRAFT: "yellow",
	SpecStatus.FROZEN: "cyan",
	SpecStatus.LOCKED: "green",
}


def format_timestamp(iso_str: str) -> str:
	"""Format an ISO timestamp as relative time (e.g. '2m ago') or absolute."""
	try:
		dt = datetime.fromisoformat(iso_str)
		total_secs = int((datetime.now() - dt).total_seconds())

		if total_secs < 0:
			return iso_str[:19]
		if total_secs < 60:
			return f"{total_secs}s ago"
		if total_secs < 3600:
			return f"{total_secs // 60}m ago"
		if total_secs < 86400:
			return f"{total_secs // 3600}h ago"
		return f"{total_secs // 86400}d ago"
	except (ValueError, TypeError):
		return str(iso_str)[:19]


def truncate(text: str, max_len: int = 60) -> str:
	"""Shorten text to one line for table display."""
	if not text:
		return ""
	line = " ".join(text.split())
	if len(line) <= max_len:
		return line
	return line[:max_len - 3] + "..."


def status_style(success: bool) -> str:
	return "green" if success else "red"


def status_text(success: bool) -> str:
	return "PASS" if success else "FAIL"


def render_summary(context: WorkflowContext) -> Panel:
	"""Summary panel: prompt, spec status, iteration and tracked files."""
	spec_style = SPEC_STATUS_STYLES[context.spec_status]
	status = context.implementation_status
	active = "[green]active[/green]" if context.is_workflow_active else "[dim]inactive[/dim]"
	last_activity = status.last_activity.value if status.last_activity else "-"

	lines = [
		f"[bold]Prompt:[/bold] {truncate(context.original_prompt, 80)}",
		f"[bold]Workspace:[/bold] {context.workspace_path}",
		(
			f"[bold]Spec:[/bold] [{spec_style}]{context.spec_status.value}[/{spec_style}]"
			f"  |  [bold]Iteration:[/bold] {context.iteration}/{context.max_iterations}"
			f"  |  [bold]Workflow:[/bold] {active}"
		),
		(
			f"[bold]Tests:[/bold] {len(status.tests_created)}"
			f"  |  [bold]Files:[/bold] {len(status.files_created)}"
			f"  |  [bold]Last activity:[/bold] {last_activity}"
		),
	]
	if context.spec_path:
		lines.insert(2, f"[bold]Spec file:[/bold] {context.spec_path}")
	return Panel("\n".join(lines), title="Workflow", border_style="cyan")


def render_test_table(results: tuple[TestResult, ...], limit: int = 10) -> Table:
	"""Most recent test runs, newest last."""
	table = Table(title="Test Runs")
	table.add_column("#", justify="right")
	table.add_column("Time")
	table.add_column("By", style="cyan")
	table.add_column("Passed", justify="right")
	table.add_column("Status", justify="center")
	table.add_column("Output")

	start = max(len(results) - limit, 0)
	for index, result in enumerate(results[start:], start=start + 1):
		style = status_style(result.passed)
		table.add_row(
			str(index),
			format_timestamp(result.timestamp),
			result.triggered_by.value,
			f"{result.passed_count}/{result.total}",
			f"[{style}]{status_text(result.passed)}[/{style}]",
			truncate(result.output, 50),
		)
	return table


def render_context(
	context: WorkflowContext,
	console: Optional[Console] = None,
	title: Optional[str] = None,
) -> None:
	"""Print the summary panel and, when there are any, the test runs."""
	console = console or Console()

	console.print()
	if title:
		console.rule(f"[bold cyan]{title}[/bold cyan]")
		console.print()

	console.print(render_summary(context))

	if context.test_results:
		console.print(render_test_table(context.test_results))
	else:
		console.print("[dim]No test runs yet.[/dim]")
	console.print()
