"""
Main entry point for the Jira Triage Assistant.

Commands:
1. classify: run the classification fallback chain for one issue
2. triage: classify, rank assignees, find similar tickets (optionally apply)
3. suggest-assignee / similar: the individual agent actions
4. auto-triage: toggle or inspect the auto-triage setting
5. issue-created: auto-triage a webhook payload
6. validate: check configuration
"""

import json
import logging
import sys
from typing import Any, Optional

import click
from pydantic import BaseModel

from .classifier import ClassificationChain, LLMClassifier
from .config import AppConfig, get_config
from .errors import TriageError
from .jira_client import JiraClient
from .metrics import MetricsTracker
from .settings import SettingsError, SettingsStore
from .triage import TriageService


def setup_logging(level: str) -> None:
    """
    Configure application logging.

    Logs go to stderr so stdout carries only the JSON output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stderr),
        ],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Error during command execution."""
    pass


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration before running.

    Raises:
        CommandError: If configuration is invalid.
    """
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise CommandError(
            f"Configuration validation failed with {len(errors)} error(s)"
        )


def build_chain(config: AppConfig, metrics: MetricsTracker) -> ClassificationChain:
    """Build the classification chain, with the LLM stage only when a key is set."""
    llm_classifier = None
    if config.llm.is_configured:
        llm_classifier = LLMClassifier(config.llm)
    else:
        logger.warning("OPENAI_API_KEY not set, classifications will use the keyword heuristic")

    return ClassificationChain(
        metrics,
        llm_classifier=llm_classifier,
        keyword_fallback_enabled=config.triage.keyword_fallback_enabled,
    )


def emit(result: Any) -> None:
    """Print a result as indented JSON on stdout."""
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json")
    click.echo(json.dumps(result, indent=2, ensure_ascii=False))


def _context(ctx: click.Context) -> dict:
    return ctx.ensure_object(dict)


def _prepare(ctx: click.Context) -> AppConfig:
    config: AppConfig = _context(ctx)["config"]
    validate_config(config)
    return config


def _service(config: AppConfig, client: JiraClient) -> TriageService:
    metrics = MetricsTracker(log_interval=config.triage.metrics_log_interval)
    return TriageService(
        client,
        build_chain(config, metrics),
        config.triage,
        SettingsStore(config.triage.settings_path),
    )


def _invocation_context(config: AppConfig) -> dict:
    return {"accountId": config.jira.email or "cli"}


def run_command(ctx: click.Context, func) -> None:
    """
    Run a command body with uniform error handling.

    Raises:
        SystemExit: 1 on errors, 130 on Ctrl-C.
    """
    debug = _context(ctx).get("debug", False)
    try:
        func()
    except (CommandError, TriageError, SettingsError) as e:
        click.echo(f"Command failed: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        if debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """
    Jira Ticket Triage Assistant.

    Classifies Jira issues using LLM-based analysis with keyword fallback,
    recommends assignees by workload and finds similar resolved tickets.
    """
    config = get_config()
    log_level = "DEBUG" if debug else config.log_level
    setup_logging(log_level)

    obj = _context(ctx)
    obj["config"] = config
    obj["debug"] = debug


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Only validate configuration."""
    def body():
        logger.info("Validating configuration...")
        _prepare(ctx)
        logger.info("Configuration is valid!")
        click.echo("Configuration is valid")

    run_command(ctx, body)


@cli.command()
@click.argument("issue_key")
@click.pass_context
def classify(ctx: click.Context, issue_key: str) -> None:
    """Classify ISSUE_KEY through the LLM / keyword / default chain."""
    def body():
        config = _prepare(ctx)
        with JiraClient(config.jira) as client:
            emit(_service(config, client).classify(issue_key))

    run_command(ctx, body)


@cli.command()
@click.argument("issue_key")
@click.option(
    "--apply",
    "apply_result",
    is_flag=True,
    default=False,
    help="Write priority, assignee, labels and a comment back to Jira",
)
@click.option(
    "--no-assign",
    is_flag=True,
    default=False,
    help="With --apply, do not change the assignee",
)
@click.pass_context
def triage(ctx: click.Context, issue_key: str, apply_result: bool, no_assign: bool) -> None:
    """Run the full triage flow for ISSUE_KEY."""
    def body():
        config = _prepare(ctx)
        with JiraClient(config.jira) as client:
            service = _service(config, client)
            result = service.run_triage(issue_key)
            output = {"triage": result.model_dump(mode="json")}
            if apply_result:
                applied = service.apply_result(result, assign=not no_assign)
                output["applied"] = applied.model_dump(mode="json")
            emit(output)

    run_command(ctx, body)


@cli.command("suggest-assignee")
@click.argument("issue_key")
@click.option("--category", "-c", required=True, help="Ticket category")
@click.pass_context
def suggest_assignee(ctx: click.Context, issue_key: str, category: str) -> None:
    """Recommend the least loaded assignable user for ISSUE_KEY."""
    def body():
        config = _prepare(ctx)
        with JiraClient(config.jira) as client:
            actions = _service(config, client).actions
            emit(actions.suggest_ticket_assignee(
                {"issueKey": issue_key, "category": category},
                _invocation_context(config),
            ))

    run_command(ctx, body)


@cli.command()
@click.argument("issue_key")
@click.pass_context
def similar(ctx: click.Context, issue_key: str) -> None:
    """Find resolved tickets similar to ISSUE_KEY."""
    def body():
        config = _prepare(ctx)
        with JiraClient(config.jira) as client:
            actions = _service(config, client).actions
            emit(actions.find_similar_tickets(
                {"issueKey": issue_key},
                _invocation_context(config),
            ))

    run_command(ctx, body)


@cli.command("auto-triage")
@click.argument(
    "state",
    required=False,
    default="status",
    type=click.Choice(["on", "off", "status"], case_sensitive=False),
)
@click.pass_context
def auto_triage(ctx: click.Context, state: Optional[str]) -> None:
    """Turn auto-triage of new issues on or off, or show its status."""
    def body():
        config: AppConfig = _context(ctx)["config"]
        store = SettingsStore(config.triage.settings_path)
        choice = (state or "status").lower()
        if choice != "status":
            store.set_auto_triage_enabled(choice == "on")
        emit({"autoTriageEnabled": store.is_auto_triage_enabled()})

    run_command(ctx, body)


@cli.command("issue-created")
@click.argument("event_file", type=click.File("r"), default="-")
@click.pass_context
def issue_created(ctx: click.Context, event_file) -> None:
    """
    Auto-triage the issue in a Jira "issue created" webhook payload.

    Reads the event JSON from EVENT_FILE (stdin by default). Skipped
    events and triage failures are logged, never reported as errors.
    """
    def body():
        config = _prepare(ctx)
        try:
            event = json.load(event_file)
        except json.JSONDecodeError as e:
            raise CommandError(f"Event payload is not valid JSON: {e}") from e

        with JiraClient(config.jira) as client:
            applied = _service(config, client).handle_issue_created(event)
        emit(applied if applied is not None else {"skipped": True})

    run_command(ctx, body)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
