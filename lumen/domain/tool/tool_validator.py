import re
from typing import List, Optional, Tuple

from lumen.domain.errors import CommandValidationError

MAX_COMMAND_LENGTH = 10000
MAX_OUTPUT_LENGTH = 10000

# (pattern, reason)
BLOCKED_PATTERNS: List[Tuple[str, str]] = [
    (r"rm\s+-[a-z]*r[a-z]*\s+(/|~)(\s|$)", "Recursive delete of root or home"),
    (r":\(\)\s*\{\s*:\|:&", "Fork bomb"),
    (r"dd\s+if=/dev/(zero|random|urandom)\s+of=/dev/", "Raw disk overwrite"),
    (r">\s*/dev/sd[a-z]", "Direct disk write"),
    (r"mkfs\.", "Filesystem format"),
    (r"/etc/shadow", "Shadow file access"),
    (r"/etc/sudoers", "Sudoers access"),
    (r"ncat.*-e\s*/bin", "Reverse shell"),
    (r"stratum\+tcp", "Mining pool connection"),
]

# Matched against the first word of each command segment
BLOCKED_COMMANDS: List[str] = [
    "shutdown", "reboot", "halt", "poweroff",
    "mkfs", "fdisk",
    "useradd", "userdel", "passwd", "chpasswd",
]

_SEGMENT_SPLIT = re.compile(r"\s*(?:&&|\|\||;|\|)\s*")


def check_command(command: str) -> Tuple[bool, Optional[str]]:
    """Return (is_valid, reason) for a shell command"""

    if not command or not command.strip():
        return False, "Empty command"
    if len(command) > MAX_COMMAND_LENGTH:
        return False, f"Command too long ({len(command)} > {MAX_COMMAND_LENGTH})"

    for pattern, reason in BLOCKED_PATTERNS:
        if re.search(pattern, command, re.IGNORECASE):
            return False, f"Blocked: {reason}"

    for segment in _SEGMENT_SPLIT.split(command.strip()):
        words = segment.split()
        if not words:
            continue
        first_word = words[0].lower().split("/")[-1]
        if first_word in BLOCKED_COMMANDS:
            return False, f"Command '{first_word}' is not allowed"

    return True, None


def validate_command(command: str) -> None:
    """Raise ``CommandValidationError`` for commands the sandbox must not run"""

    is_valid, reason = check_command(command)
    if not is_valid:
        raise CommandValidationError(reason or "Command rejected")


def truncate_output(output: str, max_length: int = MAX_OUTPUT_LENGTH) -> str:
    if not output:
        return ""
    if len(output) > max_length:
        return output[:max_length] + f"\n... (truncated, {len(output)} total)"
    return output
