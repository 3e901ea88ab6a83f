"""
Tool: Prompt Runner
Purpose: Run the Claude CLI non-interactively with a single prompt

Command:
    <claude> --print --permission-mode bypassPermissions <prompt>

CLAUDE_CONFIG_DIR is passed through so the CLI uses the same credentials file
the token refresh engine maintains.

Usage:
    runner = PromptRunner("claude", config_dir=Path("/data/claude"), timeout_seconds=180)
    result = await runner.run("Summarize: the front door opened")
    if result.success:
        print(result.output)
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 3 * 60


@dataclass
class PromptResult:
    success: bool
    output: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error: str | None = None


class PromptRunner:
    """Spawns one CLI process per prompt."""

    def __init__(
        self,
        claude_path: str = "claude",
        config_dir: Path | str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        cwd: Path | str | None = None,
    ):
        self.claude_path = claude_path
        self.config_dir = str(config_dir) if config_dir else None
        self.timeout_seconds = timeout_seconds
        self.cwd = str(cwd) if cwd else None

    def build_command(self, prompt: str) -> list[str]:
        return [self.claude_path, "--print", "--permission-mode", "bypassPermissions", prompt]

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        local_bin = str(Path.home() / ".local" / "bin")
        env["PATH"] = f"{local_bin}{os.pathsep}{env.get('PATH', '')}"
        if self.config_dir:
            env["CLAUDE_CONFIG_DIR"] = self.config_dir
        return env

    async def run(self, prompt: str) -> PromptResult:
        logger.info("Running Claude CLI...")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(prompt),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                cwd=self.cwd,
            )
        except OSError as e:
            logger.error(f"Failed to start Claude CLI: {e}")
            return PromptResult(success=False, error=f"Claude CLI error: {e!s}")

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            stdout_bytes, stderr_bytes = await process.communicate()
            minutes = round(self.timeout_seconds / 60)
            logger.error(f"Claude CLI timed out after {self.timeout_seconds:g}s")
            return PromptResult(
                success=False,
                stdout=stdout_bytes.decode("utf-8", errors="replace"),
                stderr=stderr_bytes.decode("utf-8", errors="replace"),
                error=f"Claude execution timed out ({minutes} min)",
            )

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")

        if process.returncode == 0:
            return PromptResult(
                success=True,
                output=stdout.strip(),
                stdout=stdout,
                stderr=stderr,
                exit_code=0,
            )

        logger.error(f"Claude CLI exited with code {process.returncode}")
        return PromptResult(
            success=False,
            stdout=stdout,
            stderr=stderr,
            exit_code=process.returncode,
            error=f"Claude execution failed (exit code: {process.returncode})",
        )


__all__ = ["DEFAULT_TIMEOUT_SECONDS", "PromptResult", "PromptRunner"]
