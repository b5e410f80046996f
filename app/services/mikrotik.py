"""RouterOS control over SSH.

PPPoE secrets are managed with RouterOS CLI commands sent through
paramiko. Transient transport failures are retried a fixed number of
times with a linear delay before surfacing as RouterConnectionError;
command rejections surface immediately as RouterCommandError.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from functools import lru_cache
from typing import Any

import paramiko

from app.config import settings
from app.models.network import MikrotikRouter
from app.services.credential_crypto import decrypt_credential
from app.services.router_pool import PoolExhaustedError, RouterConnectionPool

logger = logging.getLogger(__name__)

# Control characters cannot be represented inside a quoted RouterOS value
_ROUTEROS_UNSAFE_RE = re.compile(r"[\x00-\x1f\x7f]")
_ROUTEROS_ESCAPE_RE = re.compile(r'(["\\$?])')
_ROUTEROS_ID_RE = re.compile(r"^\*[0-9A-Fa-f]+$")
_ROUTEROS_FAILURE_MARKERS = (
    "failure:",
    "syntax error",
    "expected ",
    "no such item",
    "bad command name",
    "invalid value",
    "input does not match",
)
_HIDDEN_FIELDS = frozenset({"password"})


class RouterConnectionError(Exception):
    """Router unreachable after the configured connection attempts."""


class RouterCommandError(Exception):
    """Router accepted the connection but rejected the command."""


def _quote(value: str) -> str:
    text = str(value)
    if _ROUTEROS_UNSAFE_RE.search(text):
        raise ValueError(f"Unsafe characters in RouterOS value: {text!r}")
    return '"' + _ROUTEROS_ESCAPE_RE.sub(r"\\\1", text) + '"'


def _checked_id(user_id: str) -> str:
    if not user_id or not _ROUTEROS_ID_RE.match(str(user_id)):
        raise ValueError(f"Invalid RouterOS item id: {user_id!r}")
    return str(user_id)


def _ssh_alive(client: paramiko.SSHClient) -> bool:
    transport = client.get_transport()
    return transport is not None and transport.is_active()


def parse_routeros_get(output: str) -> dict[str, str]:
    """Parse the ``key=value;key=value`` line printed by ``:put [... get ...]``."""
    result: dict[str, str] = {}
    for part in output.strip().split(";"):
        if "=" not in part:
            continue
        key, _, value = part.partition("=")
        result[key.strip()] = value.strip()
    return result


class RouterControlClient:
    def __init__(
        self,
        pool: RouterConnectionPool | None = None,
        attempts: int | None = None,
        retry_delay: float | None = None,
        timeout: float | None = None,
        ssh_factory: Callable[[], Any] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._pool = pool
        self.attempts = max(1, attempts or settings.mikrotik_attempts)
        self.retry_delay = (
            retry_delay
            if retry_delay is not None
            else settings.mikrotik_retry_delay_ms / 1000
        )
        self.timeout = timeout or settings.mikrotik_timeout
        self._ssh_factory = ssh_factory
        self._sleep = sleep

    @property
    def pool(self) -> RouterConnectionPool | None:
        return self._pool

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def test_connection(self, router: MikrotikRouter) -> str:
        """Return the router identity; raises RouterConnectionError if unreachable."""
        output = self._execute(router, "/system identity print")
        identity = output.split(":", 1)[-1].strip()
        logger.info("Router %s reachable, identity=%s", router.name, identity)
        return identity

    def create_pppoe_user(
        self, router: MikrotikRouter, username: str, password: str, profile: str
    ) -> str:
        command = (
            ":put [/ppp secret add "
            f"name={_quote(username)} password={_quote(password)} "
            f"profile={_quote(profile)} service=pppoe]"
        )
        output = self._execute(router, command, redact=_quote(password))
        user_id = output.strip().splitlines()[-1].strip() if output.strip() else ""
        if not _ROUTEROS_ID_RE.match(user_id):
            raise RouterCommandError(f"Unexpected response creating {username}: {output!r}")
        logger.info(
            "Created PPPoE user %s on router %s (id=%s, profile=%s)",
            username,
            router.name,
            user_id,
            profile,
        )
        return user_id

    def update_user_profile(
        self, router: MikrotikRouter, user_id: str, profile: str
    ) -> bool:
        """Switch a secret's profile and drop its active session so it reconnects."""
        item = _checked_id(user_id)
        command = (
            f"/ppp secret set {item} profile={_quote(profile)}; "
            f"/ppp active remove [find where name=[/ppp secret get {item} name]]"
        )
        self._execute(router, command)
        logger.info(
            "Updated PPPoE user %s on router %s to profile %s",
            item,
            router.name,
            profile,
        )
        return True

    def delete_user(self, router: MikrotikRouter, user_id: str) -> bool:
        item = _checked_id(user_id)
        self._execute(
            router,
            f"/ppp active remove [find where name=[/ppp secret get {item} name]]; "
            f"/ppp secret remove {item}",
        )
        logger.info("Deleted PPPoE user %s from router %s", item, router.name)
        return True

    def get_user_info(self, router: MikrotikRouter, username: str) -> dict[str, str] | None:
        command = f":put [/ppp secret get [find where name={_quote(username)}]]"
        try:
            output = self._execute(router, command)
        except RouterCommandError:
            return None
        info = parse_routeros_get(output)
        if not info:
            return None
        return {key: value for key, value in info.items() if key not in _HIDDEN_FIELDS}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _open_ssh(self, router: MikrotikRouter):
        client = self._ssh_factory()
        if settings.mikrotik_ssh_verify_host_key:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        password = decrypt_credential(router.password_encrypted)
        try:
            client.connect(
                router.ip_address,
                port=router.ssh_port or settings.mikrotik_ssh_port,
                username=router.username,
                password=password,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except BaseException:
            client.close()
            raise
        return client

    def _run(self, client, command: str) -> tuple[str, str]:
        _stdin, stdout, stderr = client.exec_command(command, timeout=self.timeout * 6)
        output: str = stdout.read().decode(errors="replace").strip()
        error: str = stderr.read().decode(errors="replace").strip()
        return output, error

    @staticmethod
    def _check(output: str, error: str) -> str:
        lowered = output.lower()
        if error and not output:
            raise RouterCommandError(error)
        if any(marker in lowered for marker in _ROUTEROS_FAILURE_MARKERS):
            raise RouterCommandError(output)
        return output

    def _execute(self, router: MikrotikRouter, command: str, redact: str | None = None) -> str:
        shown = command.replace(redact, "***") if redact else command
        last_exc: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                if self._pool is None:
                    client = self._open_ssh(router)
                    try:
                        output, error = self._run(client, command)
                    finally:
                        client.close()
                    return self._check(output, error)
                with self._pool.connection(
                    router.pool_key, lambda: self._open_ssh(router)
                ) as client:
                    output, error = self._run(client, command)
                return self._check(output, error)
            except PoolExhaustedError as exc:
                raise RouterConnectionError(
                    f"Router {router.name} connection pool exhausted"
                ) from exc
            except (paramiko.SSHException, OSError) as exc:
                last_exc = exc
                logger.warning(
                    "Router %s (%s) attempt %s/%s failed for %r: %s",
                    router.name,
                    router.ip_address,
                    attempt,
                    self.attempts,
                    shown,
                    exc,
                )
                if attempt < self.attempts:
                    self._sleep(self.retry_delay)
        logger.error(
            "Router %s (%s) unreachable after %s attempts",
            router.name,
            router.ip_address,
            self.attempts,
        )
        raise RouterConnectionError(
            f"Failed to reach router {router.name} after {self.attempts} attempts"
        ) from last_exc


def build_router_pool() -> RouterConnectionPool | None:
    if not settings.mikrotik_pooling_enabled:
        return None
    return RouterConnectionPool(
        max_size=settings.mikrotik_pool_size,
        idle_timeout=settings.mikrotik_pool_idle_timeout,
        acquire_timeout=settings.mikrotik_pool_acquire_timeout,
        is_alive=_ssh_alive,
    )


@lru_cache(maxsize=1)
def get_router_client() -> RouterControlClient:
    """Process-wide client; each worker process owns one pool."""
    return RouterControlClient(pool=build_router_pool())
