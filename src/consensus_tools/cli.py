"""CLI entry point for consensus-tools."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from consensus_tools import __version__
from consensus_tools.config import Settings, load_settings
from consensus_tools.errors import ConsensusToolsError, Unauthorized, ValidationError
from consensus_tools.jobs import JobDraft, JobEngine, SubmissionDraft, VoteDraft
from consensus_tools.ledger import LedgerEngine
from consensus_tools.storage import create_store

console = Console()

T = TypeVar("T")


@dataclass
class CliContext:
    settings: Settings
    agent_id: str | None

    def engines(self) -> tuple[JobEngine, LedgerEngine]:
        store = create_store(self.settings.storage)
        ledger = LedgerEngine(store, self.settings.ledger)
        return JobEngine(store, ledger, self.settings), ledger

    def require_agent(self) -> str:
        if not self.agent_id:
            raise click.UsageError("No agent id: pass --agent or set CONSENSUS_AGENT_ID")
        return self.agent_id


def _run(call: Callable[[], Awaitable[T]]) -> T:
    """Run one async operation, printing core errors in red."""
    try:
        return asyncio.run(call())
    except ConsensusToolsError as exc:
        console.print(f"[red]Error ({exc.kind}):[/red] {escape(str(exc))}")
        sys.exit(1)


def _json_option(raw: str | None, name: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{name} is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be a JSON object")
    return value


pass_cli = click.make_pass_decorator(CliContext)


@click.group()
@click.version_option(version=__version__, prog_name="consensus")
@click.option("--agent", envvar="CONSENSUS_AGENT_ID", default=None, help="Acting agent id")
@click.option(
    "--state",
    envvar="CONSENSUS_STATE_PATH",
    type=click.Path(path_type=Path),
    default=None,
    help="State file (JSON) or database (SQLite)",
)
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None, help="TOML settings file")
@click.option("-v", "--verbose", is_flag=True, help="Log lifecycle events")
@click.pass_context
def main(ctx: click.Context, agent: str | None, state: Path | None, config_path: Path | None, verbose: bool) -> None:
    """consensus-tools: job board with staked claims and consensus resolution."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")
    try:
        settings = load_settings(config_path)
    except ConsensusToolsError as exc:
        console.print(f"[red]Error ({exc.kind}):[/red] {escape(str(exc))}")
        sys.exit(1)
    if state is not None:
        settings.storage.path = state
        if state.suffix in (".db", ".sqlite"):
            settings.storage.kind = "sqlite"
    ctx.obj = CliContext(settings=settings, agent_id=agent)


@main.command()
@pass_cli
def init(cli: CliContext) -> None:
    """Create the state document and apply configured balances."""
    _, ledger = cli.engines()
    ledger_settings = cli.settings.ledger

    async def run() -> int:
        await ledger.store.init()
        added = await ledger.apply_config_balances(ledger_settings.balances, ledger_settings.balances_mode)
        return len(added)

    adjusted = _run(run)
    console.print(f"[green]State initialized at {cli.settings.storage.path}[/green]")
    console.print(f"  Storage:  {cli.settings.storage.kind}")
    console.print(f"  Balances: {adjusted} adjusted")


@main.command()
@click.argument("title")
@click.option("--description", default="", help="Job description")
@click.option("--reward", type=float, default=None, help="Reward split among winners")
@click.option("--stake", "stake_required", type=float, default=None, help="Minimum claim stake")
@click.option("--policy", "policy_key", default=None, help="Consensus policy preset name")
@click.option("--policy-json", default=None, help="Consensus policy overrides as JSON")
@click.option("--mode", type=click.Choice(["SUBMISSION", "VOTING"]), default="SUBMISSION")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--max-participants", type=int, default=None)
@click.option("--expires", "expires_seconds", type=int, default=None, help="Seconds until expiry")
@pass_cli
def post(
    cli: CliContext,
    title: str,
    description: str,
    reward: float | None,
    stake_required: float | None,
    policy_key: str | None,
    policy_json: str | None,
    mode: str,
    tags: tuple[str, ...],
    max_participants: int | None,
    expires_seconds: int | None,
) -> None:
    """Post a new job."""
    agent_id = cli.require_agent()
    engine, _ = cli.engines()

    async def run() -> Any:
        draft = JobDraft(
            title=title,
            description=description,
            reward=reward,
            stake_required=stake_required,
            policy_key=policy_key,
            consensus_policy=_json_option(policy_json, "--policy-json"),
            mode=mode,
            tags=list(tags),
            max_participants=max_participants,
            expires_seconds=expires_seconds,
        )
        return await engine.post_job(agent_id, draft)

    job = _run(run)
    console.print(f"[green]Posted[/green] {job.id}")
    console.print(f"  Policy:  {job.consensus_policy.type}")
    console.print(f"  Reward:  {job.reward:g} {job.currency}")
    console.print(f"  Expires: {job.expires_at}")


@main.command()
@click.option("--status", default=None, help="Filter by status")
@click.option("--tag", default=None, help="Filter by tag")
@click.option("--mine", is_flag=True, help="Only jobs posted by --agent")
@pass_cli
def jobs(cli: CliContext, status: str | None, tag: str | None, mine: bool) -> None:
    """List jobs."""
    engine, _ = cli.engines()
    creator = cli.require_agent() if mine else None
    found = _run(lambda: engine.list_jobs(status=status.upper() if status else None, tag=tag, creator=creator))

    if not found:
        console.print("[dim]No jobs.[/dim]")
        return

    table = Table(title="Jobs")
    table.add_column("Job ID", style="cyan")
    table.add_column("Title", max_width=40)
    table.add_column("Policy", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Reward", justify="right")
    for job in found:
        table.add_row(job.id, job.title[:40], str(job.consensus_policy.type), str(job.status), f"{job.reward:g}")
    console.print(table)


@main.command()
@click.argument("job_id")
@pass_cli
def status(cli: CliContext, job_id: str) -> None:
    """Show a job with its claims, submissions, votes and resolution."""
    engine, _ = cli.engines()
    report = _run(lambda: engine.get_status(job_id))
    job = report.job

    console.print(f"[bold]{job.title}[/bold] ({job.id})")
    console.print(f"  Status:  [yellow]{job.status}[/yellow]")
    console.print(f"  Policy:  {job.consensus_policy.type}")
    console.print(f"  Creator: {job.created_by_agent_id}")

    if report.claims:
        table = Table(title="Claims")
        table.add_column("Agent", style="cyan")
        table.add_column("Stake", justify="right")
        table.add_column("Lease until")
        table.add_column("Status", style="yellow")
        for claim in report.claims:
            table.add_row(claim.agent_id, f"{claim.stake_amount:g}", claim.lease_until, str(claim.status))
        console.print(table)

    if report.submissions:
        table = Table(title="Submissions")
        table.add_column("Submission", style="cyan")
        table.add_column("Agent")
        table.add_column("Confidence", justify="right")
        table.add_column("Votes", justify="right")
        table.add_column("Status", style="yellow")
        for sub in report.submissions:
            votes = sum(1 for vote in report.votes if vote.submission_id == sub.id)
            table.add_row(sub.id, sub.agent_id, f"{sub.confidence:.2f}", str(votes), str(sub.status))
        console.print(table)

    if report.resolution:
        resolution = report.resolution
        console.print(f"[green]Resolved[/green] at {resolution.resolved_at}")
        console.print(f"  Winners: {', '.join(resolution.winners) or '-'}")
        for payout in resolution.payouts:
            console.print(f"  Payout:  {payout.agent_id} +{payout.amount:g}")
        for slash in resolution.slashes:
            console.print(f"  [red]Slash:[/red]   {slash.agent_id} -{slash.amount:g} ({slash.reason})")


@main.command()
@click.argument("job_id")
@click.option("--stake", type=float, default=0.0, help="Stake above the job minimum")
@click.option("--lease", "lease_seconds", type=int, default=None, help="Lease length in seconds")
@pass_cli
def claim(cli: CliContext, job_id: str, stake: float, lease_seconds: int | None) -> None:
    """Claim a job, staking credits."""
    agent_id = cli.require_agent()
    engine, _ = cli.engines()
    assignment = _run(lambda: engine.claim_job(agent_id, job_id, stake_amount=stake, lease_seconds=lease_seconds))
    console.print(f"[green]Claimed[/green] {job_id} (stake {assignment.stake_amount:g})")
    console.print(f"  Lease until: {assignment.lease_until}")


@main.command()
@click.argument("job_id")
@pass_cli
def heartbeat(cli: CliContext, job_id: str) -> None:
    """Extend the lease on an active claim."""
    agent_id = cli.require_agent()
    engine, _ = cli.engines()
    assignment = _run(lambda: engine.heartbeat(agent_id, job_id))
    if assignment is None:
        console.print(f"[dim]No active claim on {job_id}.[/dim]")
        return
    console.print(f"[green]Lease extended[/green] until {assignment.lease_until}")


@main.command()
@click.argument("job_id")
@click.option("--summary", default="", help="Short description of the result")
@click.option("--artifacts", default=None, help="Result artifacts as JSON")
@click.option("--artifact-ref", default=None, help="Reference to an external artifact")
@click.option("--confidence", type=float, default=0.0, help="Self-reported confidence in [0, 1]")
@pass_cli
def submit(
    cli: CliContext,
    job_id: str,
    summary: str,
    artifacts: str | None,
    artifact_ref: str | None,
    confidence: float,
) -> None:
    """Submit a result for a job."""
    agent_id = cli.require_agent()
    engine, _ = cli.engines()

    async def run() -> Any:
        draft = SubmissionDraft(
            summary=summary,
            artifacts=_json_option(artifacts, "--artifacts") or {},
            artifact_ref=artifact_ref,
            confidence=confidence,
        )
        return await engine.submit_job(agent_id, job_id, draft)

    submission = _run(run)
    console.print(f"[green]Submitted[/green] {submission.id}")


@main.command()
@click.argument("job_id")
@click.option("--submission", "submission_id", default=None, help="Submission to vote for")
@click.option("--choice", "choice_key", default=None, help="Choice key to vote for")
@click.option("--score", type=float, default=1.0, help="Vote score")
@click.option("--weight", type=float, default=None, help="Explicit vote weight")
@click.option("--stake", "stake_amount", type=float, default=None, help="Credits staked on this vote")
@click.option("--rationale", default=None)
@pass_cli
def vote(
    cli: CliContext,
    job_id: str,
    submission_id: str | None,
    choice_key: str | None,
    score: float,
    weight: float | None,
    stake_amount: float | None,
    rationale: str | None,
) -> None:
    """Vote on a submission or a choice."""
    agent_id = cli.require_agent()
    engine, _ = cli.engines()
    draft = VoteDraft(
        submission_id=submission_id,
        choice_key=choice_key,
        score=score,
        weight=weight,
        stake_amount=stake_amount,
        rationale=rationale,
    )
    cast = _run(lambda: engine.vote(agent_id, job_id, draft))
    console.print(f"[green]Voted[/green] {cast.id}")


@main.command()
@click.argument("job_id")
@click.option("--winner", "winners", multiple=True, help="Winning agent (repeatable)")
@click.option("--submission", "submission_id", default=None, help="Winning submission")
@pass_cli
def resolve(cli: CliContext, job_id: str, winners: tuple[str, ...], submission_id: str | None) -> None:
    """Resolve a job and settle stakes."""
    agent_id = cli.require_agent()
    engine, _ = cli.engines()
    resolution = _run(
        lambda: engine.resolve_job(
            agent_id, job_id, manual_winners=list(winners), manual_submission_id=submission_id
        )
    )
    console.print(f"[green]Resolved[/green] {job_id}")
    console.print(f"  Winners: {', '.join(resolution.winners) or '-'}")
    reason = resolution.consensus_trace.get("reason")
    if reason:
        console.print(f"  [yellow]No winner:[/yellow] {reason}")


@main.command()
@click.argument("agent_id", required=False)
@click.option("--all", "show_all", is_flag=True, help="Show every agent's balance")
@pass_cli
def balance(cli: CliContext, agent_id: str | None, show_all: bool) -> None:
    """Show an agent's credit balance."""
    _, ledger = cli.engines()
    if show_all:
        balances = _run(ledger.get_balances)
        table = Table(title="Balances")
        table.add_column("Agent", style="cyan")
        table.add_column("Balance", justify="right", style="green")
        for agent, amount in sorted(balances.items()):
            table.add_row(agent, f"{amount:g}")
        console.print(table)
        return
    agent = agent_id or cli.require_agent()
    amount = _run(lambda: ledger.get_balance(agent))
    console.print(f"{agent}: [green]{amount:g}[/green] credits")


@main.command()
@click.argument("amount", type=float)
@pass_cli
def faucet(cli: CliContext, amount: float) -> None:
    """Mint test credits for --agent (requires ledger.faucet_enabled)."""
    agent_id = cli.require_agent()
    _, ledger = cli.engines()

    async def run() -> Any:
        if not cli.settings.ledger.faucet_enabled:
            raise Unauthorized("Faucet is disabled; set CONSENSUS_FAUCET_ENABLED=1")
        if amount <= 0:
            raise ValidationError("amount must be positive")
        return await ledger.faucet(agent_id, amount)

    entry = _run(run)
    console.print(f"[green]+{entry.amount:g}[/green] credits to {agent_id}")
