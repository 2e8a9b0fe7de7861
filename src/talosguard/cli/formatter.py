# src/talosguard/cli/formatter.py
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from talosguard.core.models import ClusterContext, SessionState, ValidationError, ERROR
from talosguard.sync.watcher import SyncReport, SYNCED, FAILED, TIMEOUT

# stdout belongs to the hook protocol; everything human-facing goes to stderr
console = Console(stderr=True)

SYNC_BANNERS = {
    SYNCED: ("green", "ArgoCD Sync Complete"),
    FAILED: ("red", "ArgoCD Sync FAILED"),
    TIMEOUT: ("yellow", "ArgoCD Sync TIMEOUT"),
}


class GuardFormatter:
    """
    Renders the guard's findings for a terminal: detected cluster context,
    validation diagnostics, session state and post-push sync reports.
    """

    def __init__(self, target: Optional[Console] = None):
        self.console = target or console

    def print_context(self, context: ClusterContext):
        self.console.print(Panel.fit(
            f"[bold white]Cluster:[/bold white]  {context.name}\n"
            f"[bold white]Endpoint:[/bold white] {context.endpoint or '-'}\n"
            f"[bold white]Domain:[/bold white]   {context.domain or '-'}\n"
            f"[bold white]Repo:[/bold white]     {context.repo_root}",
            title="[bold cyan]GitOps Context[/bold cyan]",
            border_style="cyan",
        ))

        if context.nodes:
            nodes = Table(title="Nodes", header_style="bold magenta")
            nodes.add_column("Name", style="cyan")
            nodes.add_column("IP")
            nodes.add_column("Role")
            for node in context.nodes:
                role_color = "yellow" if node.is_control_plane else "white"
                nodes.add_row(node.name, node.ip, f"[{role_color}]{node.role}[/{role_color}]")
            self.console.print(nodes)

        apps = Table(title="Applications", show_lines=True, header_style="bold magenta")
        apps.add_column("App", style="cyan")
        apps.add_column("Namespace")
        apps.add_column("Chart")
        apps.add_column("Tolerations", justify="center")
        apps.add_column("PSA")
        apps.add_column("ignoreDiff", justify="center")
        for app in context.apps.values():
            apps.add_row(
                app.name,
                app.namespace,
                f"{app.chart.name or '-'}@{app.chart.version}",
                "✅" if app.has_tolerations else "❌",
                app.psa_level or "-",
                "✅" if app.ignore_differences else "-",
            )
        self.console.print(apps)

    def print_diagnostics(self, errors: List[ValidationError], file_name: str):
        if not errors:
            self.console.print(f"[green]✅ {file_name}: no issues found.[/green]")
            return

        table = Table(title=f"Validation Report: {file_name}", show_lines=True, header_style="bold magenta")
        table.add_column("Severity", style="bold")
        table.add_column("Location", style="cyan")
        table.add_column("Message")
        table.add_column("Fix", style="dim")

        # Errors first, then warnings; insertion order within each group
        for error in sorted(errors, key=lambda e: e.severity != ERROR):
            color = "red" if error.is_error else "yellow"
            table.add_row(
                f"[{color}]{error.severity.upper()}[/{color}]",
                error.location,
                error.message,
                error.fix or "",
            )
        self.console.print(table)

    def print_state(self, state: SessionState, path: str):
        self.console.print(Panel(
            f"[bold white]Last command:[/bold white]   {state.last_command or '-'}\n"
            f"[bold white]Loop count:[/bold white]     {state.loop_count}\n"
            f"[bold white]Rendered apps:[/bold white]  {', '.join(state.validated_apps) or '-'}\n"
            f"[bold white]Diffed apps:[/bold white]    {', '.join(state.diffed_apps) or '-'}",
            title=f"Session State ({path})",
            border_style="dim",
        ))

    def print_sync_report(self, report: SyncReport):
        if report.outcome not in SYNC_BANNERS:
            self.console.print(f"[dim]Could not check ArgoCD status: {report.error}[/dim]")
            return

        color, banner = SYNC_BANNERS[report.outcome]
        self.console.print(f"\n[bold {color}]--- {banner} ---[/bold {color}]")
        if report.outcome == TIMEOUT:
            self.console.print(
                f"Assuming sync did not complete after {report.elapsed:.0f}s. Check ArgoCD UI."
            )

        if report.outcome == SYNCED:
            return
        for app in report.problem_apps:
            self.console.print(f"{app.app}: {app.sync_status}/{app.health_status}")
            if app.message:
                self.console.print(f"  [dim]{app.message}[/dim]")
