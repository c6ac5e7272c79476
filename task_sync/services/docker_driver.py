"""Thin async wrapper over the ``docker`` command-line client."""

from __future__ import annotations

import asyncio
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from task_sync.core.config import settings
from task_sync.core.logging import get_logger

logger = get_logger(__name__)


class ContainerCommandError(RuntimeError):
    """Raised when a docker command exits non-zero or cannot be started."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class CommandTimeoutError(ContainerCommandError):
    """Raised when a docker command exceeds ``COMMAND_TIMEOUT_SECONDS``."""


@dataclass(frozen=True, slots=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


class DockerCLI:
    """Container driver and inspector backed by ``subprocess.run`` in a worker thread."""

    def __init__(self, *, binary: str | None = None, timeout_seconds: float | None = None) -> None:
        self.binary = binary or settings.docker_binary
        self.timeout_seconds = float(timeout_seconds or settings.command_timeout_seconds)

    async def run(
        self,
        args: Sequence[str],
        *,
        check: bool = False,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        command = [self.binary, *args]
        timeout = timeout_seconds or self.timeout_seconds

        def _invoke() -> subprocess.CompletedProcess[str]:
            return subprocess.run(
                command,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )

        try:
            proc = await asyncio.to_thread(_invoke)
        except subprocess.TimeoutExpired as exc:
            logger.warning("docker.command.timeout", extra={"docker_args": list(args), "timeout": timeout})
            msg = f"docker {' '.join(args[:2])} timed out after {int(timeout)}s"
            raise CommandTimeoutError(msg) from exc
        except OSError as exc:
            msg = f"failed to start {self.binary}: {exc}"
            raise ContainerCommandError(msg) from exc
        result = CommandResult(
            args=tuple(args),
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if check and not result.ok:
            message = result.stderr.strip() or result.stdout.strip() or "docker command failed"
            raise ContainerCommandError(message, output=result.output)
        return result

    # Inspection

    async def exists(self, name: str) -> bool:
        result = await self.run(["container", "inspect", "-f", "{{.Id}}", name])
        return result.ok

    async def volume_exists(self, name: str) -> bool:
        result = await self.run(["volume", "inspect", name])
        return result.ok

    async def inspect_image(self, container: str) -> tuple[str, bool]:
        result = await self.run(
            ["inspect", "-f", "{{.Image}} {{.State.Running}}", container],
            check=True,
        )
        image_ref, _, running = result.stdout.strip().partition(" ")
        return image_ref, running.strip().lower() == "true"

    async def resolve_image_id(self, tag: str) -> str | None:
        """Return the image id for ``tag``, retrying as ``tag:latest``."""
        result = await self.run(["inspect", "-f", "{{.Id}}", tag])
        if result.ok and result.stdout.strip():
            return result.stdout.strip()
        if ":" not in tag:
            latest = await self.run(["inspect", "-f", "{{.Id}}", f"{tag}:latest"])
            if latest.ok and latest.stdout.strip():
                return latest.stdout.strip()
        logger.debug("docker.image.unresolved", extra={"tag": tag, "stderr": result.stderr.strip()})
        return None

    async def container_image_id(self, container: str) -> str:
        result = await self.run(["inspect", "-f", "{{.Image}}", container], check=True)
        return result.stdout.strip()

    async def find_container_by_ancestor(self, image_tag: str) -> str | None:
        result = await self.run(
            ["ps", "--filter", f"ancestor={image_tag}", "--format", "{{.ID}}"],
            check=True,
        )
        for line in result.stdout.splitlines():
            if line.strip():
                return line.strip()
        return None

    # Mutations

    async def build(
        self,
        image_tag: str,
        context: str | Path,
        *,
        parameters: Sequence[str] = (),
        platform: str | None = None,
    ) -> CommandResult:
        args = ["build", "-t", image_tag]
        if platform:
            args.extend(["--platform", platform])
        args.extend(parameters)
        args.append(str(context))
        return await self.run(args, check=True)

    async def pull(self, image_tag: str, *, platform: str | None = None) -> CommandResult:
        args = ["pull"]
        if platform:
            args.extend(["--platform", platform])
        args.append(image_tag)
        return await self.run(args, check=True)

    async def exec_shell(
        self,
        container: str,
        command: str,
        *,
        workdir: str | None = None,
        shell: Sequence[str] = ("sh", "-c"),
    ) -> CommandResult:
        args = ["exec"]
        if workdir:
            args.extend(["-w", workdir])
        args.extend([container, *shell, command])
        return await self.run(args)

    async def copy_into(self, container: str, source: str | Path, destination: str) -> CommandResult:
        return await self.run(["cp", str(source), f"{container}:{destination}"], check=True)

    async def run_container(
        self,
        name: str,
        image: str,
        *,
        mounts: dict[str, str] | None = None,
        platform: str | None = None,
        parameters: Sequence[str] = (),
        command: Sequence[str] = (),
    ) -> str:
        """Start a detached container and return its id."""
        args = ["run", "-d", "--name", name]
        for host_path, container_path in (mounts or {}).items():
            args.extend(["-v", f"{host_path}:{container_path}"])
        if platform:
            args.extend(["--platform", platform])
        args.extend(parameters)
        args.append(image)
        args.extend(command)
        result = await self.run(args, check=True)
        return result.stdout.strip()

    async def start(self, name: str) -> CommandResult:
        return await self.run(["start", name], check=True)

    async def remove(self, name: str) -> CommandResult:
        return await self.run(["rm", "-f", name])


__all__ = [
    "CommandResult",
    "CommandTimeoutError",
    "ContainerCommandError",
    "DockerCLI",
]
