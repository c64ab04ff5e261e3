from __future__ import annotations

import asyncio
import base64
import binascii
import json
import os
import subprocess
from typing import Iterable

from reconciler.config import get_settings
from reconciler.errors import GatewayError
from reconciler.logger import get_logger
from reconciler.metrics import record_substrate_operation

_logger = get_logger("services.etcd")


class EtcdError(GatewayError):
    pass


class EtcdUnavailableError(EtcdError):
    pass


def _parse_endpoints(raw: str) -> list[str]:
    parts = [item.strip().rstrip("/") for item in raw.split(",") if item.strip()]
    return parts


def _prefix_key(key: str) -> str:
    settings = get_settings()
    base = settings.etcd_prefix.strip() or "/reconciler"
    clean_base = base.rstrip("/")
    clean_key = key.strip().lstrip("/")
    return f"{clean_base}/{clean_key}"


def _strip_prefix(full_key: str) -> str:
    base = (get_settings().etcd_prefix.strip() or "/reconciler").rstrip("/") + "/"
    if full_key.startswith(base):
        return full_key[len(base):]
    return full_key


def _decode_b64(value: object) -> str:
    if not isinstance(value, str) or not value:
        return ""
    try:
        return base64.b64decode(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return ""


def _run_etcdctl(
    *,
    args: Iterable[str],
    timeout_seconds: int,
) -> tuple[int, str, str]:
    settings = get_settings()
    endpoints = _parse_endpoints(settings.etcd_endpoints)
    if not settings.etcd_enabled:
        raise EtcdUnavailableError("etcd.disabled", "ETCD_ENABLED is false")
    if not endpoints:
        raise EtcdUnavailableError("etcd.endpoints", "ETCD_ENDPOINTS is empty")

    cmd = [
        settings.etcdctl_command,
        f"--endpoints={','.join(endpoints)}",
        f"--dial-timeout={settings.etcd_dial_timeout_seconds}s",
        f"--command-timeout={settings.etcd_command_timeout_seconds}s",
        *args,
    ]
    env = dict(os.environ)
    env["ETCDCTL_API"] = "3"
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
            env=env,
        )
    except FileNotFoundError as exc:
        raise EtcdUnavailableError("etcd.command", str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise EtcdUnavailableError("etcd.timeout", f"etcdctl did not finish in {timeout_seconds}s") from exc
    return proc.returncode, proc.stdout.strip(), proc.stderr.strip()


async def _run_checked(
    *,
    args: Iterable[str],
    action: str,
    timeout_seconds: int = 20,
) -> str:
    arg_list = list(args)
    code, out, err = await asyncio.to_thread(
        _run_etcdctl,
        args=tuple(arg_list),
        timeout_seconds=timeout_seconds,
    )
    if code != 0:
        record_substrate_operation(backend="etcd", action=action, ok=False)
        _logger.warning(
            "etcd.command.fail",
            "etcdctl command failed",
            action=action,
            exit_code=code,
            stderr=err,
        )
        raise EtcdError(action, err or out or f"exit_{code}")
    record_substrate_operation(backend="etcd", action=action, ok=True)
    _logger.debug("etcd.command.ok", "etcdctl command succeeded", action=action)
    return out


def _parse_json_payload(payload: str) -> object:
    if not payload:
        return {}
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return {}


async def put_value(*, key: str, value: str) -> None:
    # "--" keeps etcdctl from reading a leading dash in the value as a flag
    await _run_checked(args=("put", _prefix_key(key), "--", value), action="kv.put", timeout_seconds=15)


async def get_value(*, key: str) -> str:
    out = await _run_checked(
        args=("get", _prefix_key(key), "-w", "json"),
        action="kv.get",
        timeout_seconds=15,
    )
    parsed = _parse_json_payload(out)
    if not isinstance(parsed, dict):
        return ""
    kvs = parsed.get("kvs")
    if not isinstance(kvs, list) or not kvs:
        return ""
    first = kvs[0]
    if not isinstance(first, dict):
        return ""
    return _decode_b64(first.get("value"))


async def get_prefix(*, key_prefix: str) -> dict[str, str]:
    """Values under ``key_prefix`` keyed by their path below the configured etcd prefix."""
    out = await _run_checked(
        args=("get", _prefix_key(key_prefix), "--prefix", "-w", "json"),
        action="kv.get_prefix",
        timeout_seconds=20,
    )
    parsed = _parse_json_payload(out)
    results: dict[str, str] = {}
    if not isinstance(parsed, dict):
        return results
    kvs = parsed.get("kvs")
    if not isinstance(kvs, list):
        return results
    for item in kvs:
        if not isinstance(item, dict):
            continue
        key = _decode_b64(item.get("key"))
        if not key:
            continue
        results[_strip_prefix(key)] = _decode_b64(item.get("value"))
    return results


async def delete_key(*, key: str) -> None:
    await _run_checked(args=("del", _prefix_key(key)), action="kv.delete", timeout_seconds=15)
