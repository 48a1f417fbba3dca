import unittest

from session_tracker.parsers.tool_names import resolve_tool_names, shell_programs


class ShellProgramTests(unittest.TestCase):
    def test_splits_on_operators(self) -> None:
        self.assertEqual(shell_programs("npm test && git diff | less; make"), ["npm", "git", "less", "make"])

    def test_skips_env_assignments_and_prefixes(self) -> None:
        self.assertEqual(shell_programs("FOO=1 sudo /usr/bin/python3 -m pytest"), ["python3"])

    def test_ignores_builtins_and_duplicates(self) -> None:
        self.assertEqual(shell_programs("cd src && ls && ls -la"), ["ls"])
        self.assertEqual(shell_programs("cd /tmp && export X=1"), [])

    def test_fd_redirects_are_not_operators(self) -> None:
        self.assertEqual(shell_programs("make build 2>&1 | tail -n 5"), ["make", "tail"])

    def test_unbalanced_quotes_fall_back_to_plain_split(self) -> None:
        self.assertEqual(shell_programs("echo 'unterminated && grep foo"), ["echo", "grep"])


class ResolveToolNamesTests(unittest.TestCase):
    def test_shell_tool_resolves_per_command(self) -> None:
        self.assertEqual(resolve_tool_names("run_command", {"cmd": "ls"}), ["ls"])
        self.assertEqual(resolve_tool_names("Bash", {"command": "git status && git log"}), ["git"])

    def test_shell_tool_can_resolve_to_nothing(self) -> None:
        self.assertEqual(resolve_tool_names("Bash", {"command": "cd .."}), [])

    def test_shell_tool_without_command_keeps_raw_name(self) -> None:
        self.assertEqual(resolve_tool_names("Bash", {}), ["Bash"])
        self.assertEqual(resolve_tool_names("Bash", None), ["Bash"])

    def test_mcp_tools(self) -> None:
        self.assertEqual(resolve_tool_names("mcp__github__create_issue", {}), ["mcp:github/create_issue"])
        self.assertEqual(resolve_tool_names("mcp__broken", {}), ["mcp__broken"])

    def test_agent_and_skill_tools(self) -> None:
        self.assertEqual(resolve_tool_names("Task", {"subagent_type": "reviewer"}), ["Task", "agent:reviewer"])
        self.assertEqual(resolve_tool_names("Task", {}), ["Task"])
        self.assertEqual(resolve_tool_names("Skill", {"skill": "pdf"}), ["skill:pdf"])

    def test_blank_name(self) -> None:
        self.assertEqual(resolve_tool_names("  ", {}), [])
        self.assertEqual(resolve_tool_names("Read", {"file_path": "a"}), ["Read"])


if __name__ == "__main__":
    unittest.main()
