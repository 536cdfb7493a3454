"""Execution target chosen at startup: the host or a running Docker container."""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

DOCKER_WORKSPACE = "/workspace"


@dataclass
class SandboxConfig:
    type: str  # "host" or "docker"
    container: str | None = None

    def describe(self) -> str:
        return "host" if self.type == "host" else f"docker:{self.container}"

    def get_workspace_path(self, host_path: str) -> str:
        """Where the agent sees the working directory."""
        return host_path if self.type == "host" else DOCKER_WORKSPACE


async def _exec_simple(cmd: str, *args: str) -> str:
    proc = await asyncio.create_subprocess_exec(
        cmd,
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise RuntimeError(stderr.decode("utf-8", errors="replace") or f"Exit code {proc.returncode}")
    return stdout.decode("utf-8", errors="replace")


def parse_sandbox_arg(value: str) -> SandboxConfig:
    if value == "host":
        return SandboxConfig(type="host")
    if value.startswith("docker:"):
        container = value[len("docker:"):]
        if not container:
            print(
                "Error: docker sandbox requires container name "
                "(e.g., docker:huddle-sandbox)",
                file=sys.stderr,
            )
            sys.exit(1)
        return SandboxConfig(type="docker", container=container)
    print(
        f"Error: Invalid sandbox type '{value}'. "
        "Use 'host' or 'docker:<container-name>'",
        file=sys.stderr,
    )
    sys.exit(1)


async def validate_sandbox(config: SandboxConfig) -> None:
    if config.type == "host":
        return

    try:
        await _exec_simple("docker", "--version")
    except (OSError, RuntimeError):
        print("Error: Docker is not installed or not in PATH", file=sys.stderr)
        sys.exit(1)

    try:
        result = await _exec_simple(
            "docker", "inspect", "-f", "{{.State.Running}}", config.container or ""
        )
    except RuntimeError:
        print(f"Error: Container '{config.container}' does not exist.", file=sys.stderr)
        sys.exit(1)

    if result.strip() != "true":
        print(f"Error: Container '{config.container}' is not running.", file=sys.stderr)
        print(f"Start it with: docker start {config.container}", file=sys.stderr)
        sys.exit(1)

    print(f"  Docker container '{config.container}' is running.")
