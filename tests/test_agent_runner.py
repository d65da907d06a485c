# SPDX-License-Identifier: MIT
"""Tests for the agent process runner.

Uses small shell scripts standing in for the agent executable (see the
``fake_agent`` fixture) so that spawning, streaming, exit codes,
cancellation and persistence run against real child processes.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import agent_transcript

from agent_foundry.agent.listeners import CollectingListener
from agent_foundry.agent.runner import AgentProcessRunner, HandleState
from agent_foundry.agent.types import AgentRun, AgentType
from agent_foundry.agent.watchdog import HeartbeatWatchdog
from agent_foundry.config import AgentConfig, AgentOverride
from agent_foundry.errors import ProcessError, SpawnError
from agent_foundry.events import AgentOutput, EventBus, EventRecorder
from agent_foundry.storage.repository import SqliteRepository

WAIT = 15.0


def _wait_for(predicate: Callable[[], bool], timeout: float = WAIT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _config(script: Path, **kwargs) -> AgentConfig:
    return AgentConfig(executable=str(script), terminate_grace=2.0, **kwargs)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


class TestBuildCommand:
    """Argument vector of a non-interactive streaming invocation."""

    def test_full_command(self) -> None:
        config = AgentConfig(executable="claude", model="sonnet", extra_args=("--max-turns", "5"))
        cmd = AgentProcessRunner.build_command("do it", config)
        assert cmd == [
            "claude",
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
            "--dangerously-skip-permissions",
            "--model",
            "sonnet",
            "--max-turns",
            "5",
            "do it",
        ]

    def test_without_skip_permissions_or_model(self) -> None:
        cmd = AgentProcessRunner.build_command("p", AgentConfig(skip_permissions=False))
        assert "--dangerously-skip-permissions" not in cmd
        assert "--model" not in cmd
        assert cmd[-1] == "p"


# ---------------------------------------------------------------------------
# Spawn failures
# ---------------------------------------------------------------------------


class TestSpawnErrors:
    """Misconfiguration is fatal and reported before launching."""

    def test_missing_executable_path(self, workdir: Path, tmp_path: Path) -> None:
        runner = AgentProcessRunner(_config(tmp_path / "missing" / "agent"))
        with pytest.raises(SpawnError, match="not found") as exc_info:
            runner.spawn("prompt", workdir)
        assert exc_info.value.operation == "spawn"

    def test_executable_not_on_path(self, workdir: Path) -> None:
        runner = AgentProcessRunner(AgentConfig(executable="agent-foundry-no-such-agent"))
        with pytest.raises(SpawnError, match="PATH"):
            runner.spawn("prompt", workdir)

    def test_not_executable(self, workdir: Path, tmp_path: Path) -> None:
        script = tmp_path / "plain-file"
        script.write_text("#!/bin/sh\n", encoding="utf-8")
        script.chmod(0o644)
        runner = AgentProcessRunner(_config(script))
        with pytest.raises(SpawnError, match="not executable"):
            runner.spawn("prompt", workdir)

    def test_missing_workdir(self, fake_agent, tmp_path: Path) -> None:
        runner = AgentProcessRunner(_config(fake_agent()))
        with pytest.raises(SpawnError, match="working directory"):
            runner.spawn("prompt", tmp_path / "nowhere")

    def test_empty_prompt(self, fake_agent, workdir: Path) -> None:
        runner = AgentProcessRunner(_config(fake_agent()))
        with pytest.raises(ValueError, match="prompt"):
            runner.spawn("   ", workdir)


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


class TestSpawnAndWait:
    """Streaming and exit reporting."""

    def test_successful_run(self, fake_agent, workdir: Path) -> None:
        """Messages stream to listeners and the result carries cost and session."""
        script = fake_agent(lines=agent_transcript(text="All done", session_id="sess-42", cost_usd=0.03))
        collector = CollectingListener()
        runner = AgentProcessRunner(_config(script))

        handle = runner.spawn("implement it", workdir, agent_type="implement", work_item_id="42", listeners=[collector])
        result = handle.wait(timeout=WAIT)

        assert result.success
        assert result.exit_code == 0
        assert result.cost.cost_usd == 0.03
        assert result.cost.input_tokens == 100
        assert result.run.session_id == "sess-42"
        assert result.run.work_item_id == "42"
        assert result.run.agent_type is AgentType.IMPLEMENT
        assert result.run.ended_at is not None
        assert handle.state is HandleState.EXITED
        assert collector.text == "All done"
        assert [m.type for m in collector.messages] == ["system", "assistant", "result"]

    def test_prompt_and_flags_passed_to_executable(self, fake_agent, workdir: Path) -> None:
        script = fake_agent(lines=agent_transcript())
        runner = AgentProcessRunner(_config(script, model="sonnet"))
        runner.run("write the tests", workdir)

        args = Path(f"{script}.args").read_text(encoding="utf-8").splitlines()
        assert args[:4] == ["--print", "--verbose", "--output-format", "stream-json"]
        assert args[-1] == "write the tests"
        assert "sonnet" in args

    def test_runs_in_workdir(self, fake_agent, workdir: Path) -> None:
        script = fake_agent(lines=[])
        script.write_text("#!/bin/sh\npwd > \"$0.cwd\"\n", encoding="utf-8")
        AgentProcessRunner(_config(script)).run("p", workdir)
        assert Path(Path(f"{script}.cwd").read_text(encoding="utf-8").strip()).resolve() == workdir.resolve()

    def test_nonzero_exit(self, fake_agent, workdir: Path) -> None:
        """A failing agent is a result; result() turns it into ProcessError."""
        script = fake_agent(lines=agent_transcript(), exit_code=3, stderr="boom happened")
        runner = AgentProcessRunner(_config(script))
        handle = runner.spawn("p", workdir)

        result = handle.wait(timeout=WAIT)
        assert result.exit_code == 3
        assert not result.success
        assert "boom happened" in result.stderr_tail

        with pytest.raises(ProcessError) as exc_info:
            handle.result(timeout=WAIT)
        assert exc_info.value.exit_code == 3

    def test_malformed_output_is_tolerated(self, fake_agent, workdir: Path) -> None:
        script = fake_agent(lines=["this is not json", *agent_transcript()])
        collector = CollectingListener()
        result = AgentProcessRunner(_config(script)).run("p", workdir, listeners=[collector])

        assert result.success
        assert result.completed.parse_error_count == 1
        assert len(collector.parse_errors) == 1
        assert len(collector.messages) == 3

    def test_invalid_utf8_does_not_end_stream(self, fake_agent, workdir: Path) -> None:
        """Undecodable bytes become one parse error; later lines still arrive."""
        system, assistant, result_line = agent_transcript(text="after the noise")
        script = fake_agent(lines=[])
        script.write_text(
            "#!/bin/sh\n"
            f"printf '%s\\n' '{system}'\n"
            "printf '\\377\\376 garbage\\n'\n"
            f"printf '%s\\n' '{assistant}'\n"
            f"printf '%s\\n' '{result_line}'\n",
            encoding="utf-8",
        )
        collector = CollectingListener()

        result = AgentProcessRunner(_config(script)).run("p", workdir, listeners=[collector])

        assert [m.type for m in collector.messages] == ["system", "assistant", "result"]
        assert len(collector.parse_errors) == 1
        assert "garbage" in collector.parse_errors[0].line
        assert collector.text == "after the noise"
        assert result.cost.cost_usd == 0.01
        assert result.success

    def test_agent_type_override(self, fake_agent, workdir: Path) -> None:
        """Per-type overrides pick a different executable."""
        default = fake_agent(lines=agent_transcript(), name="default-agent")
        reviewer = fake_agent(lines=agent_transcript(), name="review-agent")
        config = _config(default, overrides={"review": AgentOverride(executable=str(reviewer))})

        AgentProcessRunner(config).run("review it", workdir, agent_type=AgentType.REVIEW)

        assert Path(f"{reviewer}.args").exists()
        assert not Path(f"{default}.args").exists()

    def test_agent_output_events(self, fake_agent, workdir: Path) -> None:
        bus = EventBus()
        recorder = EventRecorder()
        bus.subscribe(recorder)
        script = fake_agent(lines=agent_transcript(text="hello"))

        result = AgentProcessRunner(_config(script), events=bus).run("p", workdir)

        outputs = recorder.of_type(AgentOutput)
        assert [e.message_type for e in outputs] == ["system", "assistant", "result"]
        assert {e.run_id for e in outputs} == {result.run.run_id}
        assert outputs[1].summary == "hello"

    def test_echo_listener_built_per_run(self, fake_agent, workdir: Path) -> None:
        script = fake_agent(lines=agent_transcript(text="echoed"))
        built: dict[str, CollectingListener] = {}

        def echo(run: AgentRun) -> CollectingListener:
            built[run.work_item_id or ""] = CollectingListener()
            return built[run.work_item_id or ""]

        runner = AgentProcessRunner(_config(script), echo=echo)
        runner.run("p", workdir, work_item_id="9")

        assert list(built) == ["9"]
        assert built["9"].text == "echoed"


class TestCancellation:
    """Terminating running agents."""

    def test_cancel_running_agent(self, fake_agent, workdir: Path) -> None:
        script = fake_agent(lines=[agent_transcript()[0]], sleep=30)
        handle = AgentProcessRunner(_config(script)).spawn("p", workdir)
        assert _wait_for(lambda: handle.state is HandleState.STREAMING)

        assert handle.cancel() is True
        result = handle.wait(timeout=WAIT)

        assert result.cancelled
        assert not result.success
        assert result.exit_code != 0
        # cancellation is not a process failure
        assert handle.result(timeout=WAIT).cancelled

    def test_cancel_after_exit_is_noop(self, fake_agent, workdir: Path) -> None:
        handle = AgentProcessRunner(_config(fake_agent(lines=agent_transcript()))).spawn("p", workdir)
        handle.wait(timeout=WAIT)
        assert handle.cancel() is False
        assert not handle.wait().cancelled

    def test_watchdog_cancels_silent_agent(self, fake_agent, workdir: Path) -> None:
        """An agent that stops producing output is treated as hung."""
        timed_out = []
        script = fake_agent(sleep=30)
        with HeartbeatWatchdog(timeout=0.3, interval=0.05, on_timeout=timed_out.append) as watchdog:
            runner = AgentProcessRunner(_config(script), watchdog=watchdog)
            handle = runner.spawn("p", workdir)
            result = handle.wait(timeout=WAIT)

        assert result.cancelled
        assert timed_out == [handle]
        assert watchdog.watched == []


class TestPersistence:
    """Runs and conversations written through the repository."""

    def test_run_and_conversation_recorded(self, fake_agent, workdir: Path, tmp_path: Path) -> None:
        repository = SqliteRepository(tmp_path / "state.db")
        script = fake_agent(lines=["garbage", *agent_transcript(session_id="sess-7")])
        runner = AgentProcessRunner(_config(script), repository=repository)

        result = runner.run("p", workdir, work_item_id="12")
        run_id = result.run.run_id

        assert _wait_for(lambda: repository.get_agent_run(run_id).ended_at is not None)
        stored = repository.get_agent_run(run_id)
        assert stored.exit_code == 0
        assert stored.session_id == "sess-7"
        assert stored.work_item_id == "12"
        assert stored.cost.cost_usd == 0.01

        conversation = repository.get_conversation(run_id)
        assert [entry.message_type for entry in conversation] == ["parse_error", "system", "assistant", "result"]
        assert [entry.seq for entry in conversation] == [1, 2, 3, 4]
        assert conversation[0].payload["line"] == "garbage"
