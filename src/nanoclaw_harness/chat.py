"""Headless conversation with a nanoclaw agent container.

Each prompt runs in a fresh, short-lived container. The session id is kept
in the session store between prompts so the agent continues the same
conversation; ``/new`` in the REPL forgets it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import click

from nanoclaw_harness.config import AssistantConfig, Credentials
from nanoclaw_harness.container import AgentInvoker, Workspace
from nanoclaw_harness.errors import MalformedOutput, TimeoutExceeded, WorkloadError
from nanoclaw_harness.sessions import SessionStore
from nanoclaw_harness.types import InvocationRequest, InvocationResult

logger = logging.getLogger(__name__)

EXIT_COMMAND = "exit"
RESET_COMMAND = "/new"


class ChatSession:
    """A conversation bound to one workspace folder.

    Args:
        invoker: Runs each turn in a container.
        sessions: Session store shared with the invoker.
        workspace: Host workspace for the conversation.
        credentials: Credentials; exactly one is sent per turn.
        assistant: Assistant identity settings.
        model: Model identifier passed to the container.
        is_primary: Sent as ``isMain``.
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        sessions: SessionStore,
        workspace: Workspace,
        credentials: Credentials,
        assistant: AssistantConfig | None = None,
        model: str | None = None,
        is_primary: bool = True,
    ) -> None:
        """Initialize the chat session."""
        self.invoker = invoker
        self.sessions = sessions
        self.workspace = workspace
        self.credentials = credentials
        self.assistant = assistant or AssistantConfig()
        self.model = model
        self.is_primary = is_primary

    @property
    def session_id(self) -> str | None:
        """Session id the next turn will resume, if any."""
        return self.sessions.load(self.workspace.folder)

    def build_request(self, prompt: str) -> InvocationRequest:
        """Build the request for *prompt*, resuming the stored session."""
        return InvocationRequest(
            prompt=prompt,
            session_id=self.session_id,
            workspace_folder=self.workspace.folder,
            channel_id=self.assistant.channel_id,
            is_primary=self.is_primary,
            is_scheduled=False,
            assistant_name=self.assistant.name,
            secrets=self.credentials.to_secrets(),
        )

    async def ask(self, prompt: str) -> InvocationResult:
        """Run one turn.

        Raises:
            LaunchError, MalformedOutput, TimeoutExceeded, WorkloadError: As
                raised by AgentInvoker.invoke.
        """
        return await self.invoker.invoke(self.build_request(prompt), self.workspace, model=self.model)

    def reset(self) -> None:
        """Forget the stored session."""
        self.sessions.reset(self.workspace.folder)

    async def ask_once(self, prompt: str, echo: Callable[[str], None] = click.echo) -> int:
        """Single-shot mode: print the reply or the error.

        Returns:
            0 on success, 1 on a malformed, failed or timed-out turn.
        """
        return 0 if await self._turn(prompt, echo) else 1

    async def run_repl(
        self,
        read_line: Callable[[str], str] = input,
        echo: Callable[[str], None] = click.echo,
    ) -> None:
        """Interactive loop until ``exit`` or end of input.

        Per-turn errors are printed and the loop continues; launch errors
        propagate and end the session.

        Args:
            read_line: Prompt-and-read function; raises EOFError at end of input.
            echo: Output function.
        """
        echo("Nanoclaw Headless Chat")
        echo("======================")
        echo(f"Model: {self.model or self.invoker.config.container.model} | Group: {self.workspace.folder}")
        echo(f"Workspace: {self.workspace.root}")
        if self.session_id:
            echo(f"Resuming session: {self.session_id[:12]}...")
        echo(f"Type '{EXIT_COMMAND}' or press Ctrl+D to quit. Type '{RESET_COMMAND}' to reset session.")
        echo("")

        while True:
            try:
                line = await asyncio.to_thread(read_line, "> ")
            except EOFError:
                break
            prompt = line.strip()
            if prompt == EXIT_COMMAND:
                break
            if prompt == RESET_COMMAND:
                self.reset()
                echo("Session reset.")
                echo("")
                continue
            if not prompt:
                continue
            await self._turn(prompt, echo)

    async def _turn(self, prompt: str, echo: Callable[[str], None]) -> bool:
        """Run one turn and print the outcome. Returns True on success."""
        try:
            result = await self.ask(prompt)
        except MalformedOutput as exc:
            echo("")
            echo(f"[Error] {exc}")
            if exc.raw.strip():
                echo(exc.raw.strip())
            if exc.stderr_tail:
                echo("Container stderr (tail):")
                echo(exc.stderr_tail)
            echo("")
            return False
        except WorkloadError as exc:
            echo("")
            echo(f"[Agent error] {exc.result.message or '(no result)'}")
            echo("")
            return False
        except TimeoutExceeded as exc:
            echo("")
            echo(f"[Timeout] {exc}")
            if exc.tail:
                echo(exc.tail)
            echo("")
            return False
        echo("")
        echo(result.result or "(no result)")
        echo("")
        return True
