"""Agent router: run a coding agent CLI headless and stream its output.

One subprocess per query. Chunks are forwarded as they arrive; the
concatenated stdout is returned for memory extraction.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ambient.protocol import Response

logger = logging.getLogger(__name__)

ChunkHandler = Callable[[Response], Awaitable[None]]

READ_SIZE = 4096
TERMINATE_GRACE = 3.0


@dataclass(frozen=True)
class AgentConfig:
    name: str
    command: str
    args: tuple[str, ...]
    description: str = ""
    # Extra arguments that resume the agent's own previous session
    continue_args: tuple[str, ...] | None = None

    @property
    def supports_continuation(self) -> bool:
        return self.continue_args is not None


BUILTIN_AGENTS: dict[str, AgentConfig] = {
    a.name: a
    for a in (
        AgentConfig("claude", "claude", ("-p",), "Anthropic Claude Code"),
        AgentConfig("codex", "codex", ("exec",), "OpenAI Codex CLI"),
        AgentConfig("gemini", "gemini", ("-p",), "Google Gemini CLI"),
        AgentConfig("goose", "goose", ("run", "--no-session", "-t"), "Block Goose"),
        AgentConfig("aider", "aider", ("--message",), "Aider"),
        AgentConfig("copilot", "copilot", ("-p",), "GitHub Copilot CLI"),
        AgentConfig("opencode", "opencode", ("run",), "OpenCode"),
        AgentConfig("gptme", "gptme", ("--non-interactive",), "gptme"),
    )
}


@dataclass
class RouteResult:
    full_response: str = ""
    exit_code: int | None = None
    ok: bool = True


def build_enriched_prompt(prompt: str, context_block: str) -> str:
    if not context_block:
        return prompt
    return f"[Shell Context]\n{context_block}\n\n[Task]\n{prompt}"


class AgentRouter:
    def __init__(self, agents: dict[str, AgentConfig] | None = None) -> None:
        self.agents = dict(agents or BUILTIN_AGENTS)

    def get(self, name: str) -> AgentConfig | None:
        return self.agents.get(name)

    def build_command(
        self, config: AgentConfig, prompt: str, context_block: str, continue_session: bool
    ) -> list[str]:
        cmd = [config.command, *config.args]
        if continue_session and config.continue_args:
            cmd.extend(config.continue_args)
        cmd.append(build_enriched_prompt(prompt, context_block))
        return cmd

    async def route(
        self,
        prompt: str,
        agent_name: str,
        context_block: str,
        on_chunk: ChunkHandler,
        *,
        continue_session: bool = False,
        cwd: str | None = None,
    ) -> RouteResult:
        """Run the agent to completion. Does not send "done"; the caller owns that.

        If the caller is cancelled, or `on_chunk` raises, the subprocess is
        terminated before the exception propagates.
        """
        config = self.agents.get(agent_name)
        if config is None:
            available = ", ".join(self.agents)
            await on_chunk(Response.error(f"Unknown agent: {agent_name}. Available: {available}"))
            return RouteResult(ok=False)

        cmd = self.build_command(config, prompt, context_block, continue_session)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd if cwd and os.path.isdir(cwd) else None,
            )
        except OSError as e:
            await on_chunk(
                Response.error(
                    f"Failed to spawn agent '{agent_name}': {e}. Is '{config.command}' installed?"
                )
            )
            return RouteResult(ok=False)

        logger.debug("Spawned %s (pid=%d)", config.command, proc.pid)
        collected: list[str] = []

        async def pump(stream: asyncio.StreamReader, keep: bool) -> None:
            while True:
                data = await stream.read(READ_SIZE)
                if not data:
                    break
                text = data.decode("utf-8", errors="replace")
                if keep:
                    collected.append(text)
                # Some agents emit progress on stderr; forward it too
                await on_chunk(Response.chunk(text))

        try:
            await asyncio.gather(pump(proc.stdout, True), pump(proc.stderr, False))
            code = await proc.wait()
        except BaseException:
            await self._terminate(proc)
            raise

        result = RouteResult(full_response="".join(collected), exit_code=code, ok=code == 0)
        if code != 0:
            await on_chunk(Response.error(f"Agent '{agent_name}' exited with code {code}"))
        return result

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        logger.info("Terminating agent subprocess (pid=%d)", proc.pid)
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
