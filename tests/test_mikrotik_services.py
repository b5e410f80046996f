"""Tests for the RouterOS SSH client."""

import paramiko
import pytest

from app.models.network import MikrotikRouter
from app.services.credential_crypto import encrypt_credential
from app.services.mikrotik import (
    RouterCommandError,
    RouterConnectionError,
    RouterControlClient,
    _quote,
    parse_routeros_get,
)
from app.services.router_pool import RouterConnectionPool
from tests.mocks import FakeSSHClient


@pytest.fixture()
def mikrotik():
    return MikrotikRouter(
        name="core-1",
        ip_address="10.0.0.1",
        username="admin",
        password_encrypted=encrypt_credential("router-secret"),
        ssh_port=2222,
    )


def _client(handler=None, pool=None, connect_errors=None, sleeps=None):
    connect_errors = list(connect_errors or [])

    def factory():
        error = connect_errors.pop(0) if connect_errors else None
        return FakeSSHClient(handler, connect_error=error)

    return RouterControlClient(
        pool=pool,
        attempts=3,
        retry_delay=0.5,
        timeout=5,
        ssh_factory=factory,
        sleep=(sleeps.append if sleeps is not None else lambda seconds: None),
    )


def test_quote_escapes_routeros_specials():
    assert _quote('a"b$c') == '"a\\"b\\$c"'
    with pytest.raises(ValueError):
        _quote("line\nbreak")


def test_quote_keeps_separators_inside_string():
    assert _quote("a;b{c}d") == '"a;b{c}d"'
    assert _quote("back\\slash?") == '"back\\\\slash\\?"'
    with pytest.raises(ValueError):
        _quote("carriage\rreturn")


def test_parse_routeros_get():
    assert parse_routeros_get(".id=*1A;name=pppoe_x;profile=Isolir") == {
        ".id": "*1A",
        "name": "pppoe_x",
        "profile": "Isolir",
    }


def test_create_user_returns_router_id(mikrotik):
    FakeSSHClient.instances.clear()
    client = _client(lambda command: ("*2B\n", ""))

    user_id = client.create_pppoe_user(mikrotik, "pppoe_x", "P@ss$word1", "Home_20")

    assert user_id == "*2B"
    ssh = FakeSSHClient.instances[-1]
    assert ssh.connected_with["hostname"] == "10.0.0.1"
    assert ssh.connected_with["port"] == 2222
    assert ssh.connected_with["password"] == "router-secret"
    assert 'profile="Home_20"' in ssh.commands[0]
    assert 'password="P@ss\\$word1"' in ssh.commands[0]
    assert ssh.closed is True


def test_create_user_unexpected_output(mikrotik):
    client = _client(lambda command: ("", ""))

    with pytest.raises(RouterCommandError):
        client.create_pppoe_user(mikrotik, "pppoe_x", "secret", "Home_20")


def test_update_profile_kicks_active_session(mikrotik):
    FakeSSHClient.instances.clear()
    client = _client()

    assert client.update_user_profile(mikrotik, "*1A", "Isolir") is True

    command = FakeSSHClient.instances[-1].commands[0]
    assert command.startswith('/ppp secret set *1A profile="Isolir"')
    assert "/ppp active remove" in command


def test_update_profile_rejects_bad_id(mikrotik):
    with pytest.raises(ValueError):
        _client().update_user_profile(mikrotik, "*1A; /system reboot", "Isolir")


def test_delete_user_drops_session_then_removes_secret(mikrotik):
    FakeSSHClient.instances.clear()
    client = _client()

    assert client.delete_user(mikrotik, "*1A") is True

    command = FakeSSHClient.instances[-1].commands[0]
    assert command == (
        "/ppp active remove [find where name=[/ppp secret get *1A name]]; /ppp secret remove *1A"
    )


def test_command_failure_raises(mikrotik):
    client = _client(lambda command: ("failure: no such item", ""))

    with pytest.raises(RouterCommandError):
        client.delete_user(mikrotik, "*1A")


def test_transient_errors_retried_linearly(mikrotik):
    sleeps = []
    client = _client(
        lambda command: ("core-1-identity", ""),
        connect_errors=[OSError("timed out"), paramiko.SSHException("banner")],
        sleeps=sleeps,
    )

    assert client.test_connection(mikrotik) == "core-1-identity"
    assert sleeps == [0.5, 0.5]


def test_unreachable_after_attempts(mikrotik):
    sleeps = []
    client = _client(connect_errors=[OSError("down")] * 3, sleeps=sleeps)

    with pytest.raises(RouterConnectionError):
        client.test_connection(mikrotik)
    assert sleeps == [0.5, 0.5]


def test_get_user_info_hides_password(mikrotik):
    client = _client(lambda command: (".id=*1A;name=pppoe_x;password=secret;profile=Home_20", ""))

    info = client.get_user_info(mikrotik, "pppoe_x")

    assert info == {".id": "*1A", "name": "pppoe_x", "profile": "Home_20"}


def test_get_user_info_missing_user(mikrotik):
    client = _client(lambda command: ("", "input does not match any value of value-name"))

    assert client.get_user_info(mikrotik, "nobody") is None


def test_pooled_connection_reused_across_commands(mikrotik):
    FakeSSHClient.instances.clear()
    pool = RouterConnectionPool(max_size=3)
    client = _client(pool=pool)

    client.update_user_profile(mikrotik, "*1A", "Isolir")
    client.update_user_profile(mikrotik, "*1A", "Home_20")

    assert len(FakeSSHClient.instances) == 1
    assert len(FakeSSHClient.instances[0].commands) == 2
    assert pool.stats(mikrotik.pool_key)[mikrotik.pool_key]["idle"] == 1


def test_router_port_defaults(router):
    assert router.api_port == 8728
    assert router.ssh_port == 22
