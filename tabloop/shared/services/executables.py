"""Executable extraction for shell permission requests.

Splits a command line into the executables it would run so approvals
can be remembered per executable rather than per exact command.
Tools with meaningful subcommands (git, npm, docker ...) are keyed as
``"git commit"`` so approving ``git status`` does not approve
``git push``.
"""
from __future__ import annotations

import logging
import re
import shlex

logger = logging.getLogger(__name__)

SUBCOMMAND_EXECUTABLES = frozenset({"git", "npm", "yarn", "pnpm", "docker", "kubectl", "gh"})
_SKIP_WORDS = frozenset({
    "true", "false",
    "for", "in", "do", "done", "while", "until", "if", "then", "else",
    "elif", "fi", "case", "esac", "select",
})
_PREFIX_WORDS = frozenset({
    "sudo", "env", "time", "nohup", "exec",
    # Compound-statement keywords that precede a command in the same segment.
    "if", "then", "else", "elif", "do", "while", "until", "!",
})
DESTRUCTIVE_EXECUTABLES = frozenset({
    "rm", "rmdir", "unlink", "shred", "dd", "mkfs", "fdisk", "parted",
    "git reset", "git clean",
})

_RM_PATHS = frozenset({"rm", "/bin/rm", "/usr/bin/rm"})
_XARGS_VALUE_FLAGS = frozenset({"-n", "-I", "-L", "-P", "-d", "-E", "-s", "-a"})

_SEGMENT_SPLIT = re.compile(r"\|\||&&|[;|&\n]")
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def _segments(command: str) -> list[str]:
    return [s.strip() for s in _SEGMENT_SPLIT.split(command) if s.strip()]


def _tokens(segment: str) -> list[str]:
    try:
        return shlex.split(segment)
    except ValueError:
        # Unbalanced quotes; fall back to whitespace tokens.
        return segment.split()


def _executable_for(tokens: list[str]) -> str | None:
    words = [t for t in tokens if not _ENV_ASSIGNMENT.match(t)]
    while words and words[0] in _PREFIX_WORDS:
        words = words[1:]
    if not words:
        return None
    head = words[0].rsplit("/", 1)[-1]
    if not head or head in _SKIP_WORDS or head.startswith(("-", "$", "(", "{")):
        return None
    if head in SUBCOMMAND_EXECUTABLES:
        for word in words[1:]:
            if not word.startswith("-"):
                return f"{head} {word}"
    return head


def extract_executables(command: str) -> list[str]:
    """Return the distinct executables in *command*, in order of appearance."""
    found: dict[str, None] = {}
    for segment in _segments(command or ""):
        exe = _executable_for(_tokens(segment))
        if exe:
            found.setdefault(exe, None)
    return list(found)


def _find_deletes(tokens: list[str]) -> bool:
    if "-delete" in tokens:
        return True
    return any(
        flag in ("-exec", "-execdir") and target in _RM_PATHS
        for flag, target in zip(tokens, tokens[1:])
    )


def _xargs_runs_rm(tokens: list[str]) -> bool:
    start = next(
        (i for i, t in enumerate(tokens) if t.rsplit("/", 1)[-1] == "xargs"), len(tokens),
    )
    words = tokens[start + 1:]
    skip_value = False
    for word in words:
        if skip_value:
            skip_value = False
        elif word in _XARGS_VALUE_FLAGS:
            skip_value = True
        elif not word.startswith("-"):
            # First non-option word is the command xargs runs.
            return word in _RM_PATHS
    return False


def destructive_executables(command: str) -> list[str]:
    out: list[str] = []
    for segment in _segments(command or ""):
        tokens = _tokens(segment)
        exe = _executable_for(tokens)
        if exe is None:
            continue
        if exe in DESTRUCTIVE_EXECUTABLES:
            out.append(exe)
        elif exe == "find" and _find_deletes(tokens):
            out.append("find -delete")
        elif exe == "xargs" and _xargs_runs_rm(tokens):
            out.append("xargs rm")
        elif exe == "git push" and ("--force" in tokens or "-f" in tokens):
            out.append("git push --force")
    return out


def is_destructive_command(command: str) -> bool:
    return bool(destructive_executables(command))
