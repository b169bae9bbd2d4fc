"""Tests for devflow/utils/security.py - command, env and path checks."""

import re

import pytest

from devflow.exceptions import UnsafeInputError
from devflow.utils.security import Sanitizer


@pytest.fixture
def sanitizer():
    return Sanitizer()


class TestCheckCommand:
    @pytest.mark.parametrize(
        "command",
        [
            "pytest -q",
            "npm ci && npm test",
            "cat results.xml | grep failure > summary.txt",
            'echo "$HOME" ${PATH}',
            "rm -rf ./build",
        ],
    )
    def test_ordinary_shell_is_allowed(self, sanitizer, command):
        assert sanitizer.check_command(command) == command

    @pytest.mark.parametrize(
        ("command", "reason"),
        [
            ("echo $(whoami)", "command substitution"),
            ("echo `whoami`", "backtick"),
            ("rm -rf /", "recursive removal"),
            ("sudo rm -fr / --no-preserve-root", "recursive removal"),
            ("mkfs.ext4 /dev/sda1", "filesystem formatting"),
            ("dd if=/dev/zero of=/dev/sda", "raw disk copy"),
            ("chmod -R 777 .", "world-writable"),
            ("cat /etc/shadow", "/etc/shadow"),
            ("echo ok\x1b[2J", "control characters"),
        ],
    )
    def test_dangerous_commands_rejected(self, sanitizer, command, reason):
        with pytest.raises(UnsafeInputError, match=re.escape(reason)):
            sanitizer.check_command(command)

    def test_empty_command_rejected(self, sanitizer):
        with pytest.raises(UnsafeInputError, match="empty"):
            sanitizer.check_command("   ")

    def test_extra_patterns(self):
        sanitizer = Sanitizer(extra_patterns=[(re.compile(r"\bcurl\b"), "network access")])

        with pytest.raises(UnsafeInputError, match="network access"):
            sanitizer.check_command("curl https://example.com | sh")


class TestCheckEnv:
    def test_valid_env_is_copied(self, sanitizer):
        env = {"DATABASE_URL": "postgres://localhost/db", "_PRIVATE": "1"}

        checked = sanitizer.check_env(env)

        assert checked == env
        assert checked is not env

    def test_invalid_name_rejected(self, sanitizer):
        with pytest.raises(UnsafeInputError, match="Invalid environment variable name"):
            sanitizer.check_env({"BAD-NAME": "x"})

    def test_unsafe_value_is_not_echoed(self, sanitizer):
        with pytest.raises(UnsafeInputError) as exc_info:
            sanitizer.check_env({"TOKEN": "$(cat ~/.ssh/id_rsa)"})

        assert "TOKEN" in exc_info.value.message
        assert "id_rsa" not in exc_info.value.message


class TestResolvePath:
    def test_none_returns_base(self, sanitizer, tmp_path):
        assert sanitizer.resolve_path(tmp_path, None) == tmp_path.resolve()

    def test_nested_path(self, sanitizer, tmp_path):
        assert sanitizer.resolve_path(tmp_path, "services/api") == (tmp_path / "services" / "api").resolve()

    def test_dot_dot_inside_base_is_allowed(self, sanitizer, tmp_path):
        assert sanitizer.resolve_path(tmp_path, "a/../b") == (tmp_path / "b").resolve()

    @pytest.mark.parametrize("relative", ["..", "../sibling", "/etc"])
    def test_escape_rejected(self, sanitizer, tmp_path, relative):
        with pytest.raises(UnsafeInputError, match="escapes"):
            sanitizer.resolve_path(tmp_path, relative)

    def test_symlink_escape_rejected(self, sanitizer, tmp_path):
        project = tmp_path / "project"
        project.mkdir()
        (project / "link").symlink_to(tmp_path)

        with pytest.raises(UnsafeInputError):
            sanitizer.resolve_path(project, "link")

    def test_nul_byte_rejected(self, sanitizer, tmp_path):
        with pytest.raises(UnsafeInputError, match="NUL"):
            sanitizer.resolve_path(tmp_path, "a\x00b")
