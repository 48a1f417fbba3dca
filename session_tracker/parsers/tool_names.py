"""Map raw tool invocations onto the logical names counted per session."""
from __future__ import annotations

import re
import shlex
from typing import Any, Mapping

_SHELL_TOOL_NAMES = {"bash", "run_command", "shell", "execute_command", "run_shell_command", "terminal"}
_COMMAND_KEYS = ("command", "cmd", "script")
_AGENT_TOOL_NAMES = {"Task", "Agent"}
_OPERATOR_CHARS = frozenset(";&|")
_COMMAND_PREFIXES = {"sudo", "time", "env", "nohup", "exec", "command", "xargs"}
# Shell builtins that never show up as a distinct program.
_IGNORED_BUILTINS = {
    "cd", "pushd", "popd", "export", "unset", "set", "source", ".", "alias",
    "true", "false", ":", "exit", "return", "local", "readonly", "shift",
}
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_FALLBACK_SPLIT = re.compile(r"\s*(?:&&|\|\||;|\|)\s*")
_FD_REDIRECT = re.compile(r"\d*[<>]&\d*-?")
_PROGRAM_NAME = re.compile(r"^[A-Za-z0-9_.+-]*[A-Za-z_][A-Za-z0-9_.+-]*$")


def _tokenize(command: str) -> list[str]:
    command = _FD_REDIRECT.sub(" ", command)
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    try:
        return list(lexer)
    except ValueError:
        # Unbalanced quotes: fall back to a plain operator split.
        tokens: list[str] = []
        for segment in _FALLBACK_SPLIT.split(command):
            parts = segment.split()
            if parts:
                tokens.extend(parts)
                tokens.append(";")
        return tokens


def _segment_program(segment: list[str]) -> str:
    for token in segment:
        if _ENV_ASSIGNMENT.match(token):
            continue
        if token in _COMMAND_PREFIXES or token.startswith("-"):
            continue
        program = token.rsplit("/", 1)[-1].strip("()")
        return program if _PROGRAM_NAME.match(program) else ""
    return ""


def shell_programs(command: str) -> list[str]:
    """Distinct programs invoked by a shell command string, in order of appearance."""
    programs: list[str] = []
    segment: list[str] = []
    for token in _tokenize(command) + [";"]:
        if token and set(token) <= _OPERATOR_CHARS:
            program = _segment_program(segment)
            if program and program not in _IGNORED_BUILTINS and program not in programs:
                programs.append(program)
            segment = []
            continue
        segment.append(token)
    return programs


def resolve_tool_names(name: str, tool_input: Mapping[str, Any] | None) -> list[str]:
    """Resolve a raw tool name into zero or more logical tool names.

    - Shell tools resolve to the programs their command runs.
    - ``mcp__<server>__<tool>`` resolves to ``mcp:<server>/<tool>``.
    - Agent launches resolve to the raw name plus ``agent:<subagent_type>``.
    - ``Skill`` resolves to ``skill:<name>``.
    """
    raw = (name or "").strip()
    if not raw:
        return []
    payload = tool_input if isinstance(tool_input, Mapping) else {}

    if raw.lower() in _SHELL_TOOL_NAMES:
        command = next(
            (payload[key] for key in _COMMAND_KEYS if isinstance(payload.get(key), str) and payload[key].strip()),
            None,
        )
        if command is None:
            return [raw]
        return shell_programs(command)

    if raw.startswith("mcp__"):
        parts = raw.split("__", 2)
        if len(parts) == 3 and parts[1] and parts[2]:
            return [f"mcp:{parts[1]}/{parts[2]}"]
        return [raw]

    if raw in _AGENT_TOOL_NAMES:
        subagent = payload.get("subagent_type")
        if isinstance(subagent, str) and subagent.strip():
            return [raw, f"agent:{subagent.strip()}"]
        return [raw]

    if raw == "Skill":
        skill = payload.get("skill") or payload.get("name")
        if isinstance(skill, str) and skill.strip():
            return [f"skill:{skill.strip()}"]
        return [raw]

    return [raw]
