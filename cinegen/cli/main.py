"""
CLI interface for Cinegen.

Drives storyboard generation, paid image runs, wallets and payment events.
"""

import asyncio
import json
import logging
import signal
import sqlite3
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cinegen.config.loader import AppConfig, load_app_config, load_secrets
from cinegen.core.errors import CinegenError, GenerationError, ReconciliationError
from cinegen.core.ledger import TokenLedger
from cinegen.core.orchestrator import (
    CancellationToken,
    StopReason,
    StoryboardContext,
    extract_characters,
    generate_portraits,
    generate_scene_images,
    run_sequential_batch_job
)
from cinegen.core.pricing import parse_plan_tier
from cinegen.core.session import Session
from cinegen.core.units import Character, Scene, UnitStatus
from cinegen.payments.gateway import PaymentGateway
from cinegen.payments.webhook import PaymentReconciler, WebhookOutcome
from cinegen.sdk.openai_client import GenerationClient
from cinegen.storage.models import TransactionKind
from cinegen.storage.repository import AccountRepository, initialize_schema

app = typer.Typer()
wallet_app = typer.Typer(help="Inspect and manage token wallets.")
app.add_typer(wallet_app, name="wallet")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_DB_PATH = "cinegen.db"

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")
DbOption = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to SQLite database file")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """Cinegen CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)]
    )
    if ctx.invoked_subcommand is None:
        console.print("Cinegen - Use --help to see available commands")


@app.command()
def init(db: str = DbOption):
    """Initialize the Cinegen database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def storyboard(
    scenario_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Script text file"),
    scenes: int = typer.Option(..., "--scenes", "-n", min=1, help="Total number of scenes"),
    output: Path = typer.Option(Path("storyboard"), "--output", "-o", help="Output directory"),
    portraits: bool = typer.Option(True, "--portraits/--no-portraits", help="Generate character portraits"),
    config: Optional[str] = ConfigOption
):
    """
    Extract characters and plan a storyboard of N scenes.

    The storyboard is written to OUTPUT/storyboard.json, portraits to
    OUTPUT/portraits/. Planning is all-or-nothing: nothing is written if
    any batch fails.
    """
    app_config = _load_config(config)
    scenario = scenario_file.read_text(encoding="utf-8")
    client = _client(app_config)

    async def run() -> Tuple[List[Character], List[Scene]]:
        retry = app_config.retry
        characters = await extract_characters(client, scenario, retry=retry)
        console.print(f"Found {len(characters)} characters")

        if portraits and characters:
            result = await generate_portraits(
                client, characters, app_config.generation.portrait_concurrency, retry=retry
            )
            console.print(f"Portraits: {result.resolved_count}/{len(characters)} generated")

        planned = await run_sequential_batch_job(
            client,
            StoryboardContext(scenario=scenario, characters=characters),
            scenes,
            on_progress=lambda done, total: console.print(f"Planned {done}/{total} scenes"),
            batch_size=app_config.generation.batch_size,
            retry=retry
        )
        return characters, planned

    try:
        characters, planned = asyncio.run(run())
    except GenerationError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _save_storyboard(output, characters, planned)
    console.print(f"[green]✓[/] Storyboard with {len(planned)} scenes written to {output}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def images(
    user: str = typer.Option(..., "--user", "-u", help="User id to bill"),
    storyboard_dir: Path = typer.Option(Path("storyboard"), "--storyboard", "-s", help="Storyboard directory"),
    db: str = DbOption,
    config: Optional[str] = ConfigOption
):
    """
    Generate final scene images, paying per image.

    Stops when the wallet runs out of tokens or on Ctrl-C; images already
    produced are kept and paid for.
    """
    app_config = _load_config(config)
    characters, scenes = _load_storyboard(storyboard_dir)
    client = _client(app_config)
    ledger = _ledger(db, app_config)
    session = Session(user_id=user)
    cancel_token = CancellationToken()

    async def run():
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_token.cancel)
        except (NotImplementedError, RuntimeError):
            pass
        await ledger.load_wallet(session)
        return await generate_scene_images(
            client,
            scenes,
            characters,
            ledger,
            session,
            app_config.generation.cost_per_image,
            cancel_token=cancel_token,
            on_progress=lambda done, total: console.print(f"Images {done}/{total}"),
            retry=app_config.retry
        )

    try:
        result = asyncio.run(run())
    except (CinegenError, asyncio.TimeoutError) as e:
        console.print(f"[red]Error:[/] {str(e) or 'Timed out loading wallet'}")
        sys.exit(EXIT_CODE_FAIL)

    _save_storyboard(storyboard_dir, characters, scenes)
    console.print(f"Generated {len(result.completed)} images, {len(result.failures)} failed")

    if result.stop_reason == StopReason.INSUFFICIENT_TOKENS:
        console.print(f"[yellow]Stopped:[/] {result.reason}. Upgrade your plan or buy more tokens.")
        sys.exit(EXIT_CODE_FAIL)
    if result.stop_reason == StopReason.CANCELLED:
        console.print("[yellow]Stopped by user[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def checkout(
    user: str = typer.Option(..., "--user", "-u", help="User id to charge"),
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Upgrade to this plan"),
    topup: bool = typer.Option(False, "--topup", help="Buy a token top-up"),
    db: str = DbOption,
    config: Optional[str] = ConfigOption
):
    """Create a payment intent for a plan upgrade or a top-up."""
    if bool(plan) == topup:
        console.print("[red]Error:[/] Pass exactly one of --plan or --topup")
        sys.exit(EXIT_CODE_FAIL)

    app_config = _load_config(config)
    try:
        gateway = PaymentGateway(
            AccountRepository(db),
            load_secrets().stripe_secret_key,
            app_config.pricing,
            app_config.currency
        )
        if topup:
            result = gateway.create_checkout(Session(user_id=user), TransactionKind.TOP_UP)
        else:
            result = gateway.create_checkout(
                Session(user_id=user), TransactionKind.PLAN_UPGRADE, parse_plan_tier(plan)
            )
    except (CinegenError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Payment intent: {result.payment_intent_id}")
    console.print(f"Client secret: {result.client_secret}")
    console.print(f"{result.description} for {result.amount:,} {app_config.currency.upper()}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def webhook(
    payload_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw event body"),
    signature: str = typer.Option(..., "--signature", help="Stripe-Signature header value"),
    db: str = DbOption,
    config: Optional[str] = ConfigOption
):
    """Apply a signed payment provider event to the ledger."""
    app_config = _load_config(config)
    try:
        reconciler = PaymentReconciler(
            AccountRepository(db),
            load_secrets().stripe_webhook_secret,
            app_config.pricing
        )
        result = reconciler.on_payment_event(payload_file.read_bytes(), signature)
    except (ReconciliationError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"{result.outcome.value}: {result.event_id or result.message}")
    sys.exit(EXIT_CODE_FAIL if result.outcome == WebhookOutcome.REJECTED else EXIT_CODE_PASS)


@wallet_app.command("open")
def wallet_open(
    user: str = typer.Argument(..., help="User id"),
    email: Optional[str] = typer.Option(None, "--email", help="Email for the payment provider"),
    db: str = DbOption,
    config: Optional[str] = ConfigOption
):
    """Open a free-tier wallet with the one-time grant."""
    ledger = _ledger(db, _load_config(config))
    wallet = asyncio.run(ledger.open_wallet(Session(user_id=user, email=email)))
    console.print(f"[green]✓[/] {wallet.user_id}: {wallet.balance:,} tokens ({wallet.plan_tier.value})")
    sys.exit(EXIT_CODE_PASS)


@wallet_app.command("show")
def wallet_show(
    user: str = typer.Argument(..., help="User id"),
    limit: int = typer.Option(10, "--limit", "-l", help="Number of transactions to show"),
    db: str = DbOption,
    config: Optional[str] = ConfigOption
):
    """Show balance, plan ceiling and recent transactions."""
    app_config = _load_config(config)
    repository = AccountRepository(db)
    wallet = repository.get_wallet(user)
    if wallet is None:
        console.print(f"[red]Error:[/] No wallet for user {user}")
        sys.exit(EXIT_CODE_FAIL)

    ceiling = app_config.pricing.ceiling_for(wallet.plan_tier)
    console.print(f"\n[bold]Wallet:[/bold] {wallet.user_id}")
    console.print(f"Plan: {wallet.plan_tier.value}")
    console.print(f"Balance: {wallet.balance:,} / {ceiling:,} tokens\n")

    table = Table("When", "Kind", "Delta", "Before", "After", "Description")
    for tx in repository.list_transactions(user, limit):
        table.add_row(
            tx.timestamp.strftime("%Y-%m-%d %H:%M"),
            tx.kind.value,
            f"{tx.amount_delta:+,}",
            f"{tx.balance_before:,}",
            f"{tx.balance_after:,}",
            tx.description
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@wallet_app.command("grant")
def wallet_grant(
    user: str = typer.Argument(..., help="User id"),
    amount: int = typer.Argument(..., min=1, help="Tokens to grant"),
    db: str = DbOption,
    config: Optional[str] = ConfigOption
):
    """Grant tokens manually, clipped to the plan ceiling."""
    app_config = _load_config(config)
    ledger = _ledger(db, app_config)
    wallet = ledger.repository.get_wallet(user)
    if wallet is None:
        console.print(f"[red]Error:[/] No wallet for user {user}")
        sys.exit(EXIT_CODE_FAIL)

    result = asyncio.run(ledger.credit(
        user,
        amount,
        ledger.ceiling_for(wallet.plan_tier),
        TransactionKind.GRANT,
        "Manual grant"
    ))
    console.print(f"[green]✓[/] +{result.applied:,} tokens ({result.balance_before:,} → {result.balance_after:,})")
    if result.clipped:
        console.print(f"[yellow]Plan ceiling reached:[/] {result.requested - result.applied:,} tokens dropped")
    sys.exit(EXIT_CODE_PASS)


def _load_config(path: Optional[str]) -> AppConfig:
    try:
        return load_app_config(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _client(app_config: AppConfig) -> GenerationClient:
    return GenerationClient(app_config.generation.text_model, app_config.generation.image_model)


def _ledger(db: str, app_config: AppConfig) -> TokenLedger:
    initialize_schema(db)
    return TokenLedger(AccountRepository(db), app_config.pricing, app_config.timeouts)


def _save_storyboard(output: Path, characters: List[Character], scenes: List[Scene]) -> None:
    """Write storyboard.json plus portrait and scene images as PNG files."""
    (output / "portraits").mkdir(parents=True, exist_ok=True)
    (output / "scenes").mkdir(parents=True, exist_ok=True)

    for character in characters:
        if character.reference_image:
            (output / "portraits" / f"{character.id}.png").write_bytes(character.reference_image)
    for scene in scenes:
        if scene.generated_image:
            (output / "scenes" / f"{scene.id:03d}.png").write_bytes(scene.generated_image)

    data = {
        "characters": [
            {k: v for k, v in asdict(c).items() if k != "reference_image"}
            for c in characters
        ],
        "scenes": [
            {
                **{k: v for k, v in asdict(s).items() if k not in ("generated_image", "status")},
                "status": s.status.value
            }
            for s in scenes
        ]
    }
    (output / "storyboard.json").write_text(
        json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8"
    )


def _load_storyboard(directory: Path) -> Tuple[List[Character], List[Scene]]:
    path = directory / "storyboard.json"
    if not path.exists():
        console.print(f"[red]Error:[/] No storyboard found at {path}")
        sys.exit(EXIT_CODE_FAIL)

    data = json.loads(path.read_text(encoding="utf-8"))
    characters = []
    for raw in data.get("characters", []):
        portrait = directory / "portraits" / f"{raw['id']}.png"
        characters.append(Character(
            **raw,
            reference_image=portrait.read_bytes() if portrait.exists() else None
        ))

    scenes = []
    for raw in data.get("scenes", []):
        image = directory / "scenes" / f"{raw['id']:03d}.png"
        status = UnitStatus(raw.pop("status", UnitStatus.PENDING.value))
        scenes.append(Scene(
            **raw,
            generated_image=image.read_bytes() if image.exists() else None,
            status=status
        ))
    return characters, scenes


if __name__ == "__main__":
    app()
