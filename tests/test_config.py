from __future__ import annotations

import pytest

from socketpipe.config import (
    PipelineConfig,
    RendezvousAddress,
    compose_remote_command,
    split_remote_program,
)
from socketpipe.errors import UsageError


def _config(**overrides) -> PipelineConfig:
    values = dict(
        input=("tar", "cf", "-", "."),
        remote=("tar", "xf", "-"),
        login=("ssh", "-T", "host"),
    )
    values.update(overrides)
    return PipelineConfig(**values)


def test_compose_remote_command_layout() -> None:
    command = compose_remote_command(_config(), RendezvousAddress("192.0.2.7", 40123))

    assert command == [
        "ssh", "-T", "host",
        "socketpipe", "-s", "192.0.2.7", "40123",
        "tar", "xf", "-",
    ]


def test_compose_remote_command_custom_remote_program() -> None:
    config = _config(remote_program=("python3", "-m", "socketpipe"))

    command = compose_remote_command(config, RendezvousAddress("h", 1))

    assert command[3:8] == ["python3", "-m", "socketpipe", "-s", "h"]


def test_compose_keeps_tokens_with_spaces_intact() -> None:
    config = _config(remote=("sh", "-c", "cat > 'out file'"))

    command = compose_remote_command(config, RendezvousAddress("h", 2))

    assert command[-1] == "cat > 'out file'"


@pytest.mark.parametrize(
    "overrides, message",
    [
        (dict(remote=None), "remote command"),
        (dict(login=None), "remote login method"),
        (dict(input=None, output=None), "local input or output"),
        (dict(timeout=-1.0), "timeout"),
        (dict(timeout=float("nan")), "timeout"),
        (dict(timeout=float("inf")), "timeout"),
        (dict(remote_program=()), "remote program"),
    ],
)
def test_validate_rejects_incomplete_config(overrides, message) -> None:
    with pytest.raises(UsageError, match=message):
        _config(**overrides).validate()


def test_validate_accepts_consumer_only() -> None:
    config = _config(input=None, output=("sort",))

    assert config.validate() is config


def test_rendezvous_address_port_range() -> None:
    assert RendezvousAddress("h", 65535).port == 65535
    with pytest.raises(UsageError):
        RendezvousAddress("h", 65536)


def test_config_is_immutable() -> None:
    config = _config()

    with pytest.raises(AttributeError):
        config.batch = True  # type: ignore[misc]


@pytest.mark.parametrize("overrides", [dict(remote=None), dict(login=None)])
def test_compose_requires_remote_and_login(overrides) -> None:
    with pytest.raises(UsageError, match="remote command and login method"):
        compose_remote_command(_config(**overrides), RendezvousAddress("h", 1))


def test_split_remote_program_rejects_unbalanced_quotes() -> None:
    assert split_remote_program("python3 -m 'socketpipe'") == ("python3", "-m", "socketpipe")
    with pytest.raises(UsageError, match="bad remote program"):
        split_remote_program('python3 "-m')
