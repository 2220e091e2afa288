"""CLI entry point for the mailfilter email filtering agent.

Commands:
    mailfilter run     : classify unhandled emails and apply actions
    mailfilter rules   : show the active rules as sent to the classifier
    mailfilter models  : list models available on the Ollama server
"""

import asyncio
import logging
import sys

import click
from pydantic import ValidationError

from mailfilter.config import AppConfig, build_mailbox_config, load_config

logger = logging.getLogger("mailfilter")

ENVIRONMENT_HELP = """\b
Environment variables:
  OLLAMA_BASE_URL              Ollama server (default: http://localhost:11434)
  OLLAMA_MODEL                 Model name (default: auto-detect)
  MAILFILTER_CREDENTIALS_FILE  Mailbox credentials (default: secrets/mailbox.env)
  MAILFILTER_USE_SOPS          Decrypt credentials with SOPS (default: false)
  MAILFILTER_PROCESSED_FLAG    IMAP keyword for handled mail
  UNREAD_ONLY                  Only process unread emails (default: false)
  MAX_EMAIL_BATCH_SIZE         Emails per classifier call (default: 50)
  EMAIL_PROCESSING_LIMIT       Max emails per run, 0=unlimited (default: 100)
  CUSTOM_FILTERING_RULES       Comma-separated custom rules
  LOG_LEVEL                    debug, info, warning, error (default: info)
"""


@click.group(epilog=ENVIRONMENT_HELP)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """mailfilter: LLM-assisted inbox filtering."""
    try:
        config = load_config()
    except ValidationError as exc:
        click.echo(f"Error: Invalid configuration:\n{exc}", err=True)
        sys.exit(1)

    level = logging.DEBUG if verbose else config.logging_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.obj = config


# ------------------------------------------------------------------
# mailfilter run
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--preview",
    "--dry-run",
    "-p",
    "preview",
    is_flag=True,
    help="Show decisions without executing them.",
)
@click.option("--limit", "-n", type=click.IntRange(min=0), default=None, help="Max emails to process (0=all).")
@click.option("--batch-size", "-b", type=click.IntRange(min=1), default=None, help="Emails per classifier call.")
@click.option("--model", "-m", default=None, help="Ollama model name (auto-detected if omitted).")
@click.pass_obj
def run(config: AppConfig, preview: bool, limit: int | None, batch_size: int | None, model: str | None) -> None:
    """Classify unhandled emails and apply the decided actions."""
    updates: dict[str, object] = {}
    if limit is not None:
        updates["processing_limit"] = limit or None
    if batch_size is not None:
        updates["batch_size"] = batch_size
    if model is not None:
        updates["ollama_model"] = model
    config = config.model_copy(update=updates)

    try:
        asyncio.run(_run_async(config, preview))
    except Exception as exc:
        logger.exception("Email filtering failed")
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


async def _run_async(config: AppConfig, preview: bool) -> None:
    from mailfilter.executors.email_classifier import EmailClassifier
    from mailfilter.integrations.imap import ImapClient
    from mailfilter.integrations.ollama import OllamaClient
    from mailfilter.orchestrator.batching import BatchOrchestrator
    from mailfilter.orchestrator.filtering import (
        preview_email_filtering,
        run_email_filtering,
    )
    from mailfilter.rules import RulesManager

    mailbox_config = build_mailbox_config(config)
    rules_manager = RulesManager(config.custom_rules)

    limit = config.processing_limit or "all"
    click.echo(f"Batch size: {config.batch_size}, limit: {limit}, custom rules: {len(config.custom_rules)}")

    async with OllamaClient(
        config.ollama_base_url, default_keep_alive=config.ollama_keep_alive
    ) as ollama:
        # --- Resolve model ---
        model = config.ollama_model
        if model is None:
            model = await ollama.pick_instruct_model()
            if model is None:
                click.echo("Error: No models available on Ollama server.", err=True)
                sys.exit(1)
            click.echo(f"Auto-selected model: {model}")

        classifier = EmailClassifier(ollama, model, keep_alive=config.ollama_keep_alive)
        orchestrator = BatchOrchestrator(classifier, config.retry)

        async with ImapClient(mailbox_config) as imap:
            if preview:
                click.echo("Running in preview mode (no actions will be executed)...")
                decisions = await preview_email_filtering(
                    mailbox=imap,
                    orchestrator=orchestrator,
                    rules_manager=rules_manager,
                    batch_size=config.batch_size,
                    processing_limit=config.processing_limit,
                    unread_only=config.unread_only,
                    on_progress=click.echo,
                )
                click.echo(f"\nPreview complete. {len(decisions)} email(s) would be processed.")
                return

            target_folders = [
                path for key, path in mailbox_config.folders.items() if key != "inbox"
            ]
            if target_folders:
                await imap.ensure_folders(target_folders)

            stats = await run_email_filtering(
                mailbox=imap,
                orchestrator=orchestrator,
                rules_manager=rules_manager,
                batch_size=config.batch_size,
                processing_limit=config.processing_limit,
                unread_only=config.unread_only,
                action_delay=config.action_delay,
                on_progress=click.echo,
            )

    if stats.batch_errors:
        click.echo("\nErrors encountered:")
        for error in stats.batch_errors:
            click.echo(f"  - {error}")
    click.echo(f"\nEmail filtering complete. Processed {stats.total_processed} email(s).")


# ------------------------------------------------------------------
# mailfilter rules
# ------------------------------------------------------------------


@cli.command()
@click.pass_obj
def rules(config: AppConfig) -> None:
    """Show the active rules in priority order."""
    from mailfilter.rules import RulesManager

    click.echo(RulesManager(config.custom_rules).get_rules_for_prompt())


# ------------------------------------------------------------------
# mailfilter models
# ------------------------------------------------------------------


@cli.command()
@click.pass_obj
def models(config: AppConfig) -> None:
    """List models available on the Ollama server."""
    try:
        names = asyncio.run(_models_async(config))
    except Exception as exc:
        logger.exception("Could not list Ollama models")
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if not names:
        click.echo("No models available on Ollama server.")
        return
    for name in names:
        click.echo(name)


async def _models_async(config: AppConfig) -> list[str]:
    from mailfilter.integrations.ollama import OllamaClient

    async with OllamaClient(config.ollama_base_url) as ollama:
        return [m["name"] for m in await ollama.list_models()]
