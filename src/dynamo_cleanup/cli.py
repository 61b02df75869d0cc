"""Command-line interface for Dynamo Cleanup.

Provides commands to tear down a Dynamo-on-EKS deployment, preview the
teardown order and inspect the effective configuration.
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from .config import RunConfig, load_config
from .exceptions import CleanupError
from .logging_config import setup_logging
from .models import TEARDOWN_ORDER, OperationStatus, TeardownRun
from .orchestrator import TeardownOrchestrator
from .reporting import StateReporter

app = typer.Typer(
    name="dynamo-cleanup",
    help="Dynamo Cleanup - ordered, idempotent teardown of Dynamo on EKS",
    rich_markup_mode="rich",
)
console = Console()

EXIT_NOT_CONFIRMED = 2

_STATUS_STYLE = {
    OperationStatus.DELETED: "✅ Deleted",
    OperationStatus.NOT_FOUND: "➖ NotFound",
    OperationStatus.FAILED: "❌ Failed",
    OperationStatus.SKIPPED: "⏭️  Skipped",
}


def _load(
    config_path: Path | None,
    terraform_dir: Path | None = None,
    **overrides: object,
) -> RunConfig:
    config = load_config(config_path, **overrides)
    if terraform_dir is not None:
        terraform = config.terraform.model_copy(update={"workspace_dir": terraform_dir})
        config = config.model_copy(update={"terraform": terraform})
    return config


@app.command()
def run(
    cluster_name: str | None = typer.Option(None, "--cluster-name", help="EKS cluster name (default: Terraform output)"),
    region: str | None = typer.Option(None, "--region", help="AWS region (default: Terraform output)"),
    config_path: Path | None = typer.Option(None, "--config", help="Custom config file path"),
    terraform_dir: Path | None = typer.Option(None, "--terraform-dir", help="Terraform working directory"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Probe and report without deleting"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    report: Path | None = typer.Option(None, "--report", help="Write a JSON report to this file"),
    log_level: str | None = typer.Option(None, "--log-level", help="Logging level"),
    log_file: Path | None = typer.Option(None, "--log-file", help="Also append logs to this file"),
) -> None:
    """Tear down every resource the installer created."""
    try:
        config = _load(
            config_path,
            terraform_dir,
            dry_run=True if dry_run else None,
            log_level=log_level,
        )
    except (FileNotFoundError, ValueError, CleanupError) as e:
        console.print(f"[bold red]❌ Invalid configuration: {e}[/bold red]")
        sys.exit(1)

    setup_logging(config.log_level, log_file)

    if not config.dry_run and not yes:
        target = cluster_name or config.cluster_name
        confirmed = typer.confirm(
            f"This permanently deletes cluster {target} and its AWS resources. Continue?",
            default=False,
        )
        if not confirmed:
            console.print("[yellow]Aborted, nothing was deleted[/yellow]")
            sys.exit(EXIT_NOT_CONFIRMED)

    console.print("[bold blue]🧹 Starting Dynamo teardown...[/bold blue]")
    reporter = StateReporter()
    try:
        orchestrator = TeardownOrchestrator(config, reporter=reporter)
        result = orchestrator.run(cluster_name=cluster_name, region=region)
    except CleanupError as e:
        console.print(f"[bold red]❌ Teardown failed: {e}[/bold red]")
        sys.exit(1)

    _display_outcomes(result)
    console.print(reporter.summary())

    if report is not None:
        reporter.write_json(result, report)
        console.print(f"💾 Report saved to: {report}")

    if result.interrupted:
        console.print("[bold yellow]⚠️  Teardown interrupted[/bold yellow]")
    elif result.abort_reason:
        console.print(f"[bold red]❌ Teardown aborted: {result.abort_reason}[/bold red]")
    elif reporter.failures():
        console.print("[bold yellow]⚠️  Teardown completed with failures, see above[/bold yellow]")
    else:
        console.print("[bold green]✅ Teardown completed![/bold green]")

    sys.exit(result.exit_code)


@app.command()
def plan(
    cluster_name: str | None = typer.Option(None, "--cluster-name", help="EKS cluster name"),
    region: str | None = typer.Option(None, "--region", help="AWS region"),
    config_path: Path | None = typer.Option(None, "--config", help="Custom config file path"),
) -> None:
    """Show the teardown order and the names derived from naming conventions."""
    try:
        config = _load(config_path, cluster_name=cluster_name, aws_region=region)
    except (FileNotFoundError, ValueError, CleanupError) as e:
        console.print(f"[bold red]❌ Invalid configuration: {e}[/bold red]")
        sys.exit(1)

    table = Table(title=f"Teardown plan for {config.cluster_name} ({config.aws_region})")
    table.add_column("#", style="cyan")
    table.add_column("Stage", style="green")
    table.add_column("Kinds", style="yellow")
    table.add_column("Targets", style="blue")

    for index, stage in enumerate(TEARDOWN_ORDER, start=1):
        table.add_row(
            str(index),
            stage.name + (" (cluster reachable only)" if stage.requires_cluster else ""),
            ", ".join(kind.value for kind in stage.kinds),
            "\n".join(_stage_targets(config, stage.name)),
        )

    console.print(table)


@app.command("show-config")
def show_config(
    config_path: Path | None = typer.Option(None, "--config", help="Custom config file path"),
) -> None:
    """Print the effective configuration as JSON."""
    try:
        config = _load(config_path)
    except (FileNotFoundError, ValueError, CleanupError) as e:
        console.print(f"[bold red]❌ Invalid configuration: {e}[/bold red]")
        sys.exit(1)
    console.print_json(config.model_dump_json())


def _stage_targets(config: RunConfig, stage: str) -> list[str]:
    k8s = config.kubernetes
    if stage == "argocd-applications":
        return [f"{k8s.argocd_namespace}/{app_name}" for app_name in k8s.argocd_applications]
    if stage == "namespace":
        return [k8s.target_namespace]
    if stage == "custom-resources":
        return [cr.crd_name for cr in k8s.custom_resources]
    if stage == "helm-releases":
        return [f"name contains {k8s.helm_release_filter!r}", f"namespace {k8s.target_namespace}"]
    if stage == "crds":
        return k8s.crd_names
    if stage == "pre-terraform-conflicts":
        return [
            config.kms_alias,
            *config.log_groups,
            *(f"role {p}*" for p in config.iam_role_prefixes),
            *(f"policy {p}*" for p in config.iam_policy_prefixes),
            *(f"ecr {r}" for r in config.naming.ecr_repositories),
            f"efs token {config.naming.efs_creation_token}",
        ]
    for candidate in TEARDOWN_ORDER:
        if candidate.name == stage and candidate.modules:
            return [f"module.{m}" if m != "*" else "all remaining" for m in candidate.modules]
    if stage == "controller-networking":
        return [f"tag {config.naming.cluster_tag_key}={config.cluster_name}"]
    if stage == "local-artifacts":
        return [str(p) for p in config.local.artifact_paths()]
    return []


def _display_outcomes(result: TeardownRun) -> None:
    """Display one row per processed resource."""
    table = Table(title=f"Teardown of {result.cluster_name} ({result.region})")
    table.add_column("Kind", style="cyan")
    table.add_column("Identifier", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Detail", style="blue")

    for outcome in result.outcomes:
        table.add_row(
            outcome.resource.kind.value,
            outcome.resource.identifier,
            _STATUS_STYLE[outcome.status],
            outcome.detail,
        )

    console.print(table)


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
