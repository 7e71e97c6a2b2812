"""Tests for nanoclaw_harness.smoke: check flow, skips and exit code."""

from __future__ import annotations

from pathlib import Path

import pytest

from nanoclaw_harness.config import AppConfig, Credentials
from nanoclaw_harness.runner import ProcessRunner
from nanoclaw_harness.smoke import (
    CHECK_AGENT_RESPONSE,
    CHECK_CONTAINER_START,
    CHECK_IMAGE_BUILD,
    CHECK_STATUS,
    SMOKE_CONTAINER_NAME,
    CheckOutcome,
    SmokeReport,
    SmokeStage,
    SmokeTestOrchestrator,
)
from tests.conftest import FakeRuntime, agent_script

STARTUP_NOISE = agent_script(None, exit_code=1, stderr="[agent-runner] invalid input\n")
SMOKE_OK = agent_script({"status": "success", "result": "SMOKE_TEST_OK"})


@pytest.fixture
def nanoclaw_dir(tmp_path: Path) -> Path:
    d = tmp_path / "nanoclaw"
    (d / "container").mkdir(parents=True)
    (d / "container" / "Dockerfile").write_text("FROM node:22-slim\n")
    return d


def _orchestrator(
    runtime: FakeRuntime,
    config: AppConfig,
    nanoclaw_dir: Path,
    credentials: Credentials,
    out: list[str],
) -> SmokeTestOrchestrator:
    return SmokeTestOrchestrator(
        ProcessRunner(runtime, stop_grace_s=0.5), config, nanoclaw_dir, credentials, echo=out.append
    )


def _outcomes(report: SmokeReport) -> dict[str, CheckOutcome]:
    return {r.name: r.outcome for r in report.results}


class TestCredentialFree:
    """No credential configured."""

    async def test_partial_pass(self, app_config: AppConfig, nanoclaw_dir: Path) -> None:
        """Agent checks are skipped, not failed, and the run exits 0."""
        out: list[str] = []
        runtime = FakeRuntime([STARTUP_NOISE])
        orch = _orchestrator(runtime, app_config, nanoclaw_dir, Credentials(), out)
        report = await orch.run()
        assert _outcomes(report) == {
            CHECK_IMAGE_BUILD: CheckOutcome.PASS,
            CHECK_CONTAINER_START: CheckOutcome.PASS,
            CHECK_AGENT_RESPONSE: CheckOutcome.SKIP,
            CHECK_STATUS: CheckOutcome.SKIP,
        }
        assert report.exit_code == 0
        assert report.partial
        assert "Smoke test: 2/2 passed" in out
        assert any(line.startswith("PARTIAL PASS") for line in out)
        assert orch.stage is SmokeStage.SUMMARY
        assert len(runtime.specs) == 1

    async def test_start_check_sends_empty_request(
        self, app_config: AppConfig, nanoclaw_dir: Path
    ) -> None:
        runtime = FakeRuntime([STARTUP_NOISE])
        await _orchestrator(runtime, app_config, nanoclaw_dir, Credentials(), []).run()
        spec = runtime.specs[0]
        assert spec.name == f"{SMOKE_CONTAINER_NAME}-start"
        assert len(spec.mounts) == 2

    async def test_silent_container_fails_start_check(
        self, app_config: AppConfig, nanoclaw_dir: Path
    ) -> None:
        runtime = FakeRuntime([agent_script(None, exit_code=0)])
        report = await _orchestrator(runtime, app_config, nanoclaw_dir, Credentials(), []).run()
        assert _outcomes(report)[CHECK_CONTAINER_START] is CheckOutcome.FAIL
        assert report.exit_code == 1


class TestFullRun:
    """A credential is configured."""

    async def test_all_pass(self, app_config: AppConfig, nanoclaw_dir: Path) -> None:
        out: list[str] = []
        runtime = FakeRuntime([STARTUP_NOISE, SMOKE_OK])
        creds = Credentials(anthropic_api_key="sk-test")
        report = await _orchestrator(runtime, app_config, nanoclaw_dir, creds, out).run()
        assert report.passed == 4
        assert report.exit_code == 0
        assert not report.partial
        assert "Smoke test: 4/4 passed" in out
        assert runtime.specs[1].name == SMOKE_CONTAINER_NAME
        assert runtime.specs[1].env == {"CLAUDE_MODEL": "haiku"}

    async def test_missing_sentinels_fails_and_continues(
        self, app_config: AppConfig, nanoclaw_dir: Path
    ) -> None:
        """Plain error output fails the response check, shows the text, and status still runs."""
        out: list[str] = []
        runtime = FakeRuntime(
            [STARTUP_NOISE, agent_script(None, exit_code=1, stdout="error: out of memory\n")]
        )
        creds = Credentials(anthropic_api_key="sk-test")
        report = await _orchestrator(runtime, app_config, nanoclaw_dir, creds, out).run()
        outcomes = _outcomes(report)
        assert outcomes[CHECK_CONTAINER_START] is CheckOutcome.PASS
        assert outcomes[CHECK_AGENT_RESPONSE] is CheckOutcome.FAIL
        assert outcomes[CHECK_STATUS] is CheckOutcome.FAIL
        assert report.exit_code == 1
        assert any("error: out of memory" in line for line in out)

    async def test_error_status_fails_status_check(
        self, app_config: AppConfig, nanoclaw_dir: Path
    ) -> None:
        runtime = FakeRuntime(
            [STARTUP_NOISE, agent_script({"status": "error", "result": "Invalid API key"})]
        )
        creds = Credentials(anthropic_api_key="bad")
        report = await _orchestrator(runtime, app_config, nanoclaw_dir, creds, []).run()
        outcomes = _outcomes(report)
        assert outcomes[CHECK_AGENT_RESPONSE] is CheckOutcome.PASS
        assert outcomes[CHECK_STATUS] is CheckOutcome.FAIL
        status = next(r for r in report.results if r.name == CHECK_STATUS)
        assert "Got status: 'error'" in status.detail
        assert "Invalid API key" in status.detail


class TestImageBuild:
    """ImageBuildCheck failures do not stop later checks."""

    async def test_missing_dockerfile(self, app_config: AppConfig, tmp_path: Path) -> None:
        nanoclaw_dir = tmp_path / "empty"
        nanoclaw_dir.mkdir()
        runtime = FakeRuntime([STARTUP_NOISE])
        report = await _orchestrator(runtime, app_config, nanoclaw_dir, Credentials(), []).run()
        outcomes = _outcomes(report)
        assert outcomes[CHECK_IMAGE_BUILD] is CheckOutcome.FAIL
        assert outcomes[CHECK_CONTAINER_START] is CheckOutcome.PASS
        assert runtime.builds == []
        assert report.exit_code == 1

    async def test_build_failure(self, app_config: AppConfig, nanoclaw_dir: Path) -> None:
        out: list[str] = []
        runtime = FakeRuntime([STARTUP_NOISE], build_code=1)
        report = await _orchestrator(runtime, app_config, nanoclaw_dir, Credentials(), out).run()
        assert _outcomes(report)[CHECK_IMAGE_BUILD] is CheckOutcome.FAIL
        assert runtime.builds == [("nanoclaw-agent:latest", nanoclaw_dir / "container")]
        assert any("STEP 3" in line for line in out)
        assert not any(line.startswith("PARTIAL PASS") for line in out)


class TestSmokeReport:
    def test_empty_report(self) -> None:
        report = SmokeReport()
        assert report.total == 0
        assert report.exit_code == 0
        assert not report.partial
