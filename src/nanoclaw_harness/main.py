"""nanoclaw harness command line.

Usage:
    nanoclaw-harness chat [PROMPT] [--group NAME] [--workspace DIR]
    nanoclaw-harness smoke
    nanoclaw-harness build [--tag TAG]
    nanoclaw-harness reset-session [--group NAME]
    python -m nanoclaw_harness ...
"""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import sys
from pathlib import Path

import click

from nanoclaw_harness.chat import ChatSession
from nanoclaw_harness.config import (
    AppConfig,
    Credentials,
    LoggingConfig,
    load_config,
    load_credentials,
)
from nanoclaw_harness.container import AgentInvoker, Workspace
from nanoclaw_harness.errors import HarnessError, StorageError
from nanoclaw_harness.runner import ProcessRunner
from nanoclaw_harness.runtime import ContainerRuntime
from nanoclaw_harness.sessions import SessionStore, open_session_store, validate_folder
from nanoclaw_harness.smoke import SmokeTestOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "headless"


class HarnessContext:
    """Objects shared by every command.

    Args:
        config: Loaded application configuration.
        credentials: Loaded credentials.
    """

    def __init__(self, config: AppConfig, credentials: Credentials) -> None:
        """Initialize from loaded config and credentials."""
        self.config = config
        self.credentials = credentials

    def runtime(self) -> ContainerRuntime:
        """Build the runtime adapter from config."""
        rt = self.config.runtime
        return ContainerRuntime(
            cli=rt.cli,
            userns_keep_id=rt.userns_keep_id,
            launch_failure_codes=rt.launch_failure_codes,
        )

    def runner(self) -> ProcessRunner:
        """Build a process runner from config."""
        return ProcessRunner(
            self.runtime(),
            stop_grace_s=self.config.container.stop_grace_s,
            max_output_size=self.config.container.max_output_size_bytes,
        )

    def sessions(self) -> SessionStore:
        """Open the configured session store."""
        data_dir = self.config.paths.data_path
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            return open_session_store(self.config.sessions.backend, data_dir)
        except (OSError, StorageError) as exc:
            raise click.ClickException(f"Could not open session store in {data_dir}: {exc}") from exc

    def nanoclaw_dir(self, override: Path | None) -> Path:
        """Resolve the nanoclaw checkout, failing if it does not exist."""
        path = (override or self.config.paths.nanoclaw_path).expanduser().resolve()
        if not path.is_dir():
            raise click.ClickException(f"Nanoclaw directory not found at {path}")
        return path


def setup_logging(config: AppConfig) -> None:
    """Configure stdlib logging from application config.

    Sets the root logger level, attaches a StreamHandler (stderr), and
    optionally attaches a RotatingFileHandler if config.logging.file is set.

    Args:
        config: Loaded application configuration.
    """
    log_level = getattr(logging, config.logging.level, logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove any handlers already attached (e.g., from basicConfig).
    root_logger.handlers.clear()

    # Console handler (stderr). Chat replies go to stdout, so logs never mix in.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Optional rotating file handler.
    if config.logging.file:
        log_file = Path(config.logging.file).expanduser()
        if not log_file.is_absolute():
            # Resolve relative to current working directory.
            log_file = Path.cwd() / log_file
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                str(log_file),
                maxBytes=10 * 1024 * 1024,  # 10 MB
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logger.debug("Log file: %s", log_file)
        except OSError as exc:
            logger.warning("Could not open log file %s: %s", log_file, exc)


def _run(coro):
    """Run *coro* to completion, mapping harness errors to a CLI failure."""
    try:
        return asyncio.run(coro)
    except HarnessError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group(help="Run and smoke-test nanoclaw agent containers")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.yml (defaults to ./config.yml if present)",
)
@click.option(
    "--credentials",
    "credentials_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to credentials.yml (defaults to ./credentials.yml if present)",
)
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    credentials_path: Path | None,
    log_level: str | None,
) -> None:
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    if log_level:
        try:
            config.logging = LoggingConfig(level=log_level, file=config.logging.file)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--log-level") from exc
    setup_logging(config)
    ctx.obj = HarnessContext(config, load_credentials(credentials_path))


@cli.command(help="Chat with the agent (single prompt, or a REPL without one)")
@click.argument("prompt", required=False)
@click.option(
    "--nanoclaw-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Path to the nanoclaw checkout",
)
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace directory (default: <nanoclaw-dir>/groups/<group>)",
)
@click.option("--group", default=DEFAULT_GROUP, show_default=True, help="Workspace folder name")
@click.option("--model", default=None, help="Claude model (default: $CLAUDE_MODEL or haiku)")
@click.pass_obj
def chat(
    harness: HarnessContext,
    prompt: str | None,
    nanoclaw_dir: Path | None,
    workspace: Path | None,
    group: str,
    model: str | None,
) -> None:
    if not harness.credentials.configured:
        raise click.ClickException("Set ANTHROPIC_API_KEY or CLAUDE_CODE_OAUTH_TOKEN")
    try:
        validate_folder(group)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--group") from exc
    project_dir = harness.nanoclaw_dir(nanoclaw_dir)
    runner = harness.runner()
    image = harness.config.runtime.image
    if not _run(runner.runtime.image_exists(image)):
        raise click.ClickException(
            f"Agent image {image} not found. Run 'nanoclaw-harness build' first."
        )

    sessions = harness.sessions()
    invoker = AgentInvoker(runner, sessions, harness.config, nanoclaw_dir=project_dir)
    session = ChatSession(
        invoker,
        sessions,
        Workspace.for_group(project_dir, group, workspace),
        harness.credentials,
        assistant=harness.config.assistant,
        model=model,
    )
    if prompt:
        sys.exit(_run(session.ask_once(prompt)))
    _run(session.run_repl())


@cli.command(help="Build the agent image and check it answers")
@click.option(
    "--nanoclaw-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Path to the nanoclaw checkout",
)
@click.option("--model", default=None, help="Claude model for the agent response check")
@click.pass_obj
def smoke(harness: HarnessContext, nanoclaw_dir: Path | None, model: str | None) -> None:
    project_dir = harness.nanoclaw_dir(nanoclaw_dir)
    config = harness.config
    if model:
        config = config.model_copy(
            update={"container": config.container.model_copy(update={"model": model})}
        )
    click.echo("=== Nanoclaw Podman Smoke Test ===")
    click.echo(f"Nanoclaw dir: {project_dir}")
    click.echo("")
    orchestrator = SmokeTestOrchestrator(harness.runner(), config, project_dir, harness.credentials)
    report = _run(orchestrator.run())
    sys.exit(report.exit_code)


@cli.command(help="Build the agent image from <nanoclaw-dir>/container")
@click.option(
    "--nanoclaw-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Path to the nanoclaw checkout",
)
@click.option("--tag", default="latest", show_default=True, help="Image tag")
@click.pass_obj
def build(harness: HarnessContext, nanoclaw_dir: Path | None, tag: str) -> None:
    project_dir = harness.nanoclaw_dir(nanoclaw_dir)
    context_dir = project_dir / "container"
    if not (context_dir / "Dockerfile").is_file():
        raise click.ClickException(f"Dockerfile not found at {context_dir / 'Dockerfile'}")
    repository = harness.config.runtime.image.rsplit(":", 1)[0]
    image = f"{repository}:{tag}"
    click.echo(f"Building {image} from {context_dir}")
    code, output = _run(harness.runtime().build_image(image, context_dir))
    click.echo(output, nl=False)
    if code != 0:
        raise click.ClickException(f"Image build failed (exit code {code})")
    click.echo(f"Built {image}")


@cli.command("reset-session", help="Forget the stored session for a workspace folder")
@click.option("--group", default=DEFAULT_GROUP, show_default=True, help="Workspace folder name")
@click.pass_obj
def reset_session(harness: HarnessContext, group: str) -> None:
    try:
        harness.sessions().reset(group)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--group") from exc
    except StorageError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Session reset for {group}.")


def main() -> None:
    """Entry point for ``python -m nanoclaw_harness``."""
    cli(prog_name="nanoclaw-harness")
