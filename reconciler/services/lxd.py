from __future__ import annotations

import asyncio
import json
import subprocess
import time
from dataclasses import dataclass, field
from typing import Iterable

from reconciler.config import get_settings
from reconciler.errors import GatewayError
from reconciler.logger import get_logger
from reconciler.metrics import record_substrate_operation

_logger = get_logger("services.lxd")


class LXDOperationError(GatewayError):
    pass


class LXDUnavailableError(LXDOperationError):
    pass


@dataclass(frozen=True)
class LXDContainer:
    name: str
    status: str
    config: dict[str, str] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.status == "running"


def project_for(namespace: str) -> str:
    return namespace.strip() or get_settings().lxd_project


def _run_lxc(
    *,
    args: Iterable[str],
    project: str,
    timeout_seconds: int = 30,
) -> tuple[int, str, str]:
    settings = get_settings()
    cmd = [settings.lxd_command]
    if project:
        cmd.extend(["--project", project])
    cmd.extend(args)
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise LXDUnavailableError("lxd.command", str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise LXDUnavailableError("lxd.timeout", f"lxc did not finish in {timeout_seconds}s") from exc
    return proc.returncode, proc.stdout.strip(), proc.stderr.strip()


async def _run_lxc_checked(
    *,
    args: Iterable[str],
    project: str,
    action: str,
    timeout_seconds: int = 30,
) -> str:
    arg_list = list(args)
    code, out, err = await asyncio.to_thread(
        _run_lxc,
        args=tuple(arg_list),
        project=project,
        timeout_seconds=timeout_seconds,
    )
    if code != 0:
        record_substrate_operation(backend="lxd", action=action, ok=False)
        _logger.warning(
            "lxd.command.fail",
            "LXD command failed",
            action=action,
            project=project,
            args=" ".join(arg_list),
            exit_code=code,
            stderr=err,
        )
        raise LXDOperationError(action, err or out or f"exit_{code}")
    record_substrate_operation(backend="lxd", action=action, ok=True)
    _logger.debug(
        "lxd.command.ok",
        "LXD command succeeded",
        action=action,
        project=project,
        args=" ".join(arg_list),
    )
    return out


def _parse_container(row: object) -> LXDContainer | None:
    if not isinstance(row, dict):
        return None
    name = row.get("name")
    if not isinstance(name, str) or not name:
        return None
    status = row.get("status")
    raw_config = row.get("config")
    config: dict[str, str] = {}
    if isinstance(raw_config, dict):
        for key, value in raw_config.items():
            if isinstance(key, str):
                config[key] = str(value)
    return LXDContainer(
        name=name,
        status=status.lower() if isinstance(status, str) else "unknown",
        config=config,
    )


async def list_containers(*, project: str) -> list[LXDContainer]:
    out = await _run_lxc_checked(
        args=("list", "--format=json"),
        project=project,
        action="container.list",
        timeout_seconds=30,
    )
    try:
        payload = json.loads(out) if out else []
    except json.JSONDecodeError as exc:
        raise LXDOperationError("container.list", f"unreadable lxc output: {exc}") from exc
    if not isinstance(payload, list):
        return []
    containers = [_parse_container(row) for row in payload]
    return sorted((item for item in containers if item is not None), key=lambda item: item.name)


async def get_container(*, name: str, project: str) -> LXDContainer | None:
    code, out, _ = await asyncio.to_thread(
        _run_lxc,
        args=("list", f"^{name}$", "--format=json"),
        project=project,
        timeout_seconds=20,
    )
    if code != 0 or not out:
        return None
    try:
        payload = json.loads(out)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, list) or not payload:
        return None
    return _parse_container(payload[0])


async def container_status(*, name: str, project: str) -> str:
    container = await get_container(name=name, project=project)
    if container is None:
        return "unknown"
    return container.status


async def restart_container(*, name: str, project: str) -> None:
    await _run_lxc_checked(
        args=("restart", name),
        project=project,
        action="container.restart",
        timeout_seconds=60,
    )


async def wait_for_running(*, name: str, project: str, timeout_seconds: float) -> None:
    settings = get_settings()
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        status = await container_status(name=name, project=project)
        if status == "running":
            return
        await asyncio.sleep(settings.lxd_health_poll_seconds)
    raise LXDOperationError(
        "container.health_gate",
        f"container {name} did not reach running within {timeout_seconds:.0f}s",
    )
