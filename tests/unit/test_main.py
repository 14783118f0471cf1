"""Unit tests for job entrypoint routing and logging setup"""

import json
import logging
import os
from unittest.mock import AsyncMock, patch

import pytest

from trailer_sync.__main__ import main, run_job
from trailer_sync.core.config import Settings
from trailer_sync.core.errors import WaveFailedError
from trailer_sync.core.logging_config import JsonFormatter, setup_logging
from trailer_sync.store.models import PullRequest


class TestRunJob:

    @pytest.mark.asyncio
    async def test_unknown_job_type_raises(self):
        with pytest.raises(ValueError, match="Unknown job type"):
            await run_job("gatherer")

    @pytest.mark.asyncio
    async def test_check_token_returns_login(self):
        with patch("trailer_sync.jobs.update_job.check_token", AsyncMock(return_value="octocat")):
            assert await run_job("check_token") == {"login": "octocat"}

    @pytest.mark.asyncio
    async def test_refresh_item_passes_id_and_comment_flag(self, gh):
        settings = Settings(_env_file=None, refresh_item_id="P1", refresh_with_comments=True)
        refresh = AsyncMock(return_value=PullRequest.create("P1", "PullRequest", gh.pull_request("P1")))
        with (
            patch("trailer_sync.__main__.get_settings", return_value=settings),
            patch("trailer_sync.jobs.update_job.refresh_item", refresh),
        ):
            result = await run_job("refresh_item")

        refresh.assert_awaited_once_with("P1", True, settings)
        assert result == {"type": "PullRequest", "id": "P1", "state": "open"}

    @pytest.mark.asyncio
    async def test_refresh_item_requires_an_id(self):
        with patch("trailer_sync.__main__.get_settings", return_value=Settings(_env_file=None)):
            with pytest.raises(ValueError, match="REFRESH_ITEM_ID"):
                await run_job("refresh_item")


class TestMain:

    @pytest.mark.asyncio
    async def test_failed_wave_exits_non_zero(self):
        with (
            patch("trailer_sync.__main__.setup_logging", return_value="run-1"),
            patch("trailer_sync.__main__.run_job", AsyncMock(side_effect=WaveFailedError("PRs", "Bad credentials"))),
            pytest.raises(SystemExit) as exc_info,
        ):
            await main()

        assert exc_info.value.code == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_exits_non_zero(self):
        with (
            patch("trailer_sync.__main__.setup_logging", return_value="run-1"),
            patch("trailer_sync.__main__.run_job", AsyncMock(side_effect=RuntimeError("boom"))),
            pytest.raises(SystemExit) as exc_info,
        ):
            await main()

        assert exc_info.value.code == 1

    @pytest.mark.asyncio
    async def test_job_type_is_lowercased(self):
        run = AsyncMock(return_value={})
        with (
            patch.dict(os.environ, {"JOB_TYPE": "CHECK_TOKEN"}),
            patch("trailer_sync.__main__.setup_logging", return_value="run-1"),
            patch("trailer_sync.__main__.run_job", run),
        ):
            await main()

        run.assert_awaited_once_with("check_token")


class TestLoggingSetup:

    def test_returns_short_run_id(self):
        with patch.dict(os.environ, {}, clear=False), patch("logging.config.dictConfig"):
            os.environ.pop("TRAILER_RUN_ID", None)
            assert len(setup_logging()) == 8

    def test_uses_run_id_from_environment(self):
        with patch.dict(os.environ, {"TRAILER_RUN_ID": "nightly-42"}), patch("logging.config.dictConfig"):
            assert setup_logging() == "nightly-42"


class TestJsonFormatter:

    def _record(self, **extra):
        record = logging.LogRecord(
            name="trailer_sync.jobs",
            level=logging.WARNING,
            pathname="update_job.py",
            lineno=42,
            msg="Wave %s done",
            args=("PRs",),
            exc_info=None,
        )
        record.__dict__.update(extra)
        return record

    def test_outputs_json_with_run_id(self):
        parsed = json.loads(JsonFormatter(run_id="run-1").format(self._record()))

        assert parsed["severity"] == "WARNING"
        assert parsed["message"] == "Wave PRs done"
        assert parsed["run_id"] == "run-1"
        assert "timestamp" in parsed

    def test_includes_extra_fields(self):
        parsed = json.loads(JsonFormatter().format(self._record(wave_cost=3, wave="PRs")))

        assert parsed["wave_cost"] == 3
        assert parsed["wave"] == "PRs"
        assert "lineno" not in parsed
