# SPDX-License-Identifier: MIT
"""Tests for framework detection, output parsing and the test runner."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_foundry.errors import TestRunnerError
from agent_foundry.workflow.test_runner import (
    TestFramework,
    TestResult,
    TestRunner,
    detect_framework,
    parse_cargo,
    parse_go,
    parse_jest,
    parse_mocha,
    parse_output,
    parse_pytest,
    parse_unittest,
)

# ---------------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------------

CARGO_OUTPUT = """
running 4 tests
test parser::ok ... ok
test parser::edge ... FAILED
test parser::slow ... ignored
test parser::more ... ok

test result: FAILED. 2 passed; 1 failed; 1 ignored; 0 measured; 0 filtered out; finished in 0.01s
"""

PYTEST_OUTPUT = """
tests/test_a.py ..F.s.F.                                          [100%]
FAILED tests/test_a.py::test_three - assert 1 == 2
=================== 2 failed, 5 passed, 1 skipped in 0.42s ===================
"""

UNITTEST_OUTPUT = """
test_a (test_mod.TestA) ... ok
----------------------------------------------------------------------
Ran 5 tests in 0.003s

FAILED (failures=1, errors=1, skipped=1)
"""

JEST_OUTPUT = """
Test Suites: 1 failed, 2 passed, 3 total
Tests:       1 failed, 1 skipped, 4 passed, 6 total
Snapshots:   0 total
"""

MOCHA_OUTPUT = """
  5 passing (23ms)
  1 pending
  2 failing
"""

GO_OUTPUT = """
=== RUN   TestA
--- PASS: TestA (0.00s)
=== RUN   TestB
--- FAIL: TestB (0.00s)
=== RUN   TestC
--- SKIP: TestC (0.00s)
FAIL
"""


class TestParsers:
    """Each framework's summary format."""

    @pytest.mark.parametrize(
        ("parser", "output", "expected"),
        [
            (parse_cargo, CARGO_OUTPUT, (2, 1, 1)),
            (parse_pytest, PYTEST_OUTPUT, (5, 2, 1)),
            (parse_unittest, UNITTEST_OUTPUT, (2, 2, 1)),
            (parse_jest, JEST_OUTPUT, (4, 1, 1)),
            (parse_mocha, MOCHA_OUTPUT, (5, 2, 1)),
            (parse_go, GO_OUTPUT, (1, 1, 1)),
        ],
    )
    def test_counts(self, parser, output: str, expected: tuple[int, int, int]) -> None:
        assert parser(output) == expected

    def test_pytest_errors_count_as_failures(self) -> None:
        assert parse_pytest("==== 1 error, 3 passed in 0.1s ====") == (3, 1, 0)

    def test_unittest_ok(self) -> None:
        assert parse_unittest("Ran 3 tests in 0.001s\n\nOK\n") == (3, 0, 0)

    def test_go_package_lines(self) -> None:
        assert parse_go("ok  \texample.com/a\t0.01s\nFAIL\texample.com/b\t0.02s\n") == (1, 1, 0)

    def test_unknown_framework_tries_each_parser(self) -> None:
        assert parse_output(MOCHA_OUTPUT, None) == (5, 2, 1)
        assert parse_output("nothing useful", None) == (0, 0, 0)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetectFramework:
    """Marker files select the framework."""

    @pytest.mark.parametrize(
        ("files", "expected"),
        [
            ({"Cargo.toml": "[package]\n"}, TestFramework.CARGO),
            ({"go.mod": "module x\n"}, TestFramework.GO),
            ({"pyproject.toml": "[tool.pytest.ini_options]\n"}, TestFramework.PYTEST),
            ({"conftest.py": ""}, TestFramework.PYTEST),
            ({"package.json": '{"devDependencies": {"vitest": "1.0"}}'}, TestFramework.VITEST),
            ({"package.json": '{"devDependencies": {"mocha": "10"}}'}, TestFramework.MOCHA),
            ({"package.json": "{}"}, TestFramework.JEST),
            ({"setup.py": "", "tests/__init__.py": ""}, TestFramework.PYTEST),
            ({"setup.py": ""}, TestFramework.UNITTEST),
            ({"test_thing.py": ""}, TestFramework.UNITTEST),
        ],
    )
    def test_markers(self, tmp_path: Path, files: dict[str, str], expected: TestFramework) -> None:
        for name, content in files.items():
            path = tmp_path / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        assert detect_framework(tmp_path) is expected

    def test_nothing_detected(self, tmp_path: Path) -> None:
        assert detect_framework(tmp_path) is None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _sh(script: str) -> list[str]:
    return ["sh", "-c", script]


class TestTestRunner:
    """Running commands and interpreting their results."""

    def test_red(self, tmp_path: Path) -> None:
        runner = TestRunner(_sh("echo '==== 1 failed, 2 passed in 0.10s ===='; exit 1"), framework="pytest")
        result = runner.run(tmp_path)
        assert (result.passed, result.failed) == (2, 1)
        assert result.is_red
        assert not result.is_green
        assert result.exit_code == 1
        assert result.framework == "pytest"

    def test_green(self, tmp_path: Path) -> None:
        result = TestRunner(_sh("echo '3 passed in 0.01s'"), framework=TestFramework.PYTEST).run(tmp_path)
        assert result.is_green
        assert result.summary() == "3 passed, 0 failed, 0 skipped"
        assert result.duration_seconds >= 0

    def test_stderr_is_included(self, tmp_path: Path) -> None:
        result = TestRunner(_sh("echo '2 passing'; echo '1 failing' >&2; exit 1"), framework="mocha").run(tmp_path)
        assert (result.passed, result.failed) == (2, 1)

    def test_unparseable_failure_counts_as_one_failure(self, tmp_path: Path) -> None:
        """A crashing command with no recognizable summary is red, not an error."""
        result = TestRunner(_sh("echo 'compile error'; exit 2")).run(tmp_path)
        assert result.failed == 1
        assert result.is_red
        assert result.framework is None
        assert "compile error" in result.output_tail()

    def test_pytest_no_tests_collected(self, tmp_path: Path) -> None:
        result = TestRunner(_sh("echo 'no tests ran in 0.01s'; exit 5"), framework="pytest").run(tmp_path)
        assert result.no_tests
        assert not result.is_red
        assert not result.is_green

    def test_missing_command(self, tmp_path: Path) -> None:
        with pytest.raises(TestRunnerError, match="not found"):
            TestRunner(["agent-foundry-no-such-test-binary"]).run(tmp_path)

    def test_timeout(self, tmp_path: Path) -> None:
        with pytest.raises(TestRunnerError, match="timed out"):
            TestRunner(_sh("sleep 5"), timeout=0.2).run(tmp_path)

    def test_no_framework_and_no_command(self, tmp_path: Path) -> None:
        with pytest.raises(TestRunnerError, match="no test framework") as exc_info:
            TestRunner().run(tmp_path)
        assert exc_info.value.hint


class TestTestResult:
    """Derived properties."""

    def test_totals_and_tail(self) -> None:
        result = TestResult(passed=2, failed=1, skipped=3, output="\n".join(str(i) for i in range(100)))
        assert result.total == 6
        assert result.output_tail(2) == "98\n99"
        assert result.to_dict()["failed"] == 1
