"""Tests for command library."""

import pytest

from flux_release.command import Command, run
from flux_release.exceptions import CommandException, HelmException


async def test_command() -> None:
    """Test stdout parsing of a command."""
    result = await run(Command(["echo", "Hello"]))
    assert result == "Hello\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run(Command(["/bin/false"]))


async def test_failed_command_exception() -> None:
    """Test the exception type raised for a failing command."""
    with pytest.raises(HelmException, match="return code 1"):
        await run(Command(["/bin/false"], exc=HelmException))


async def test_allowed_return_code() -> None:
    """Test a non-zero return code treated as success."""
    result = await run(Command(["/bin/false"], retcodes=[1]))
    assert result == ""


async def test_command_env() -> None:
    """Test environment variables passed to the command."""
    result = await run(
        Command(["printenv", "FLUX_RELEASE_TEST"], env={"FLUX_RELEASE_TEST": "ok"})
    )
    assert result == "ok\n"


async def test_command_timeout() -> None:
    """Test a command that does not finish in time."""
    with pytest.raises(CommandException, match="timed out"):
        await run(Command(["sleep", "5"], timeout=0.1))


def test_command_string() -> None:
    """Test rendering a command with arguments that need quoting."""
    cmd = Command(["helm", "install", "--set", "a=b c"])
    assert cmd.string == "helm install --set 'a=b c'"
    assert str(cmd) == "helm install --set 'a=b c'"
