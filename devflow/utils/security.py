"""
Input checks for commands, environment values and paths.

Every command a task runs, every environment value it passes on and every
working directory it resolves goes through the Sanitizer before anything is
spawned or touched on disk. Ordinary shell syntax (pipes, ``&&``, redirects,
``$VAR`` references) is allowed since workflow commands are written by the
project itself; command substitution, control characters and a short list of
destructive commands are rejected.
"""

import re
from collections.abc import Mapping
from pathlib import Path

from devflow.exceptions import UnsafeInputError

# Control characters other than tab and newline
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

# Patterns rejected anywhere in a command or environment value
DANGEROUS_PATTERNS = [
    (re.compile(r"\$\("), "command substitution"),
    (re.compile(r"`"), "backtick command substitution"),
    (re.compile(r"\brm\s+-[a-z]*(?:rf|fr)[a-z]*\s+/(?:\s|$|\*)", re.IGNORECASE), "recursive removal of /"),
    (re.compile(r"\bmkfs(?:\.\w+)?\b", re.IGNORECASE), "filesystem formatting"),
    (re.compile(r"\bdd\s+if=", re.IGNORECASE), "raw disk copy"),
    (re.compile(r"\bchmod\s+(?:-R\s+)?777\b", re.IGNORECASE), "world-writable permissions"),
    (re.compile(r"/etc/shadow"), "access to /etc/shadow"),
    (re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "fork bomb"),
]

ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Sanitizer:
    """Rejects unsafe commands, environment entries and paths.

    Example:
        >>> sanitizer = Sanitizer()
        >>> sanitizer.check_command("pytest -q && coverage report")
        'pytest -q && coverage report'
        >>> sanitizer.check_command("echo $(cat /etc/shadow)")
        Traceback (most recent call last):
        ...
        devflow.exceptions.UnsafeInputError: Command contains command substitution
    """

    def __init__(self, extra_patterns: list[tuple[re.Pattern[str], str]] | None = None) -> None:
        self.patterns = DANGEROUS_PATTERNS + list(extra_patterns or [])

    def _find_violation(self, value: str) -> str | None:
        if CONTROL_CHARS.search(value):
            return "control characters"
        for pattern, description in self.patterns:
            if pattern.search(value):
                return description
        return None

    def check_command(self, command: str) -> str:
        """Validate a shell command.

        Returns:
            The command, unchanged

        Raises:
            UnsafeInputError: If the command is empty or matches a rejected pattern
        """
        if not command.strip():
            raise UnsafeInputError("Command is empty")
        violation = self._find_violation(command)
        if violation:
            raise UnsafeInputError(
                f"Command contains {violation}",
                suggestions=["Move complex logic into a script file and run the script"],
            )
        return command

    def check_env(self, env: Mapping[str, str]) -> dict[str, str]:
        """Validate environment variable names and values.

        Returns:
            A plain-dict copy of the environment

        Raises:
            UnsafeInputError: On an invalid name or an unsafe value
        """
        for key, value in env.items():
            if not ENV_KEY_PATTERN.match(key):
                raise UnsafeInputError(f"Invalid environment variable name '{key}'")
            violation = self._find_violation(str(value))
            if violation:
                # Never echo the value itself, it may be a secret
                raise UnsafeInputError(f"Environment variable {key} contains {violation}")
        return dict(env)

    def resolve_path(self, base: Path | str, relative: Path | str | None) -> Path:
        """Resolve ``relative`` against ``base`` without leaving ``base``.

        Args:
            base: Directory the result must stay inside
            relative: Path relative to ``base``; None or empty returns ``base``

        Returns:
            Absolute resolved path

        Raises:
            UnsafeInputError: If the path escapes ``base`` or contains NUL bytes
        """
        base_path = Path(base).resolve()
        if relative is None or str(relative) == "":
            return base_path

        text = str(relative)
        if "\x00" in text:
            raise UnsafeInputError("Path contains NUL bytes")

        resolved = (base_path / text).resolve()
        if resolved != base_path and base_path not in resolved.parents:
            raise UnsafeInputError(
                f"Path '{text}' escapes the base directory {base_path}",
                suggestions=["Use a path inside the project directory"],
            )
        return resolved
