"""Tests for the command line entry points."""

from unittest.mock import patch

import pytest

from relevance_engine import database
from relevance_engine.cli import main
from relevance_engine.models import FeedbackAction, RunResult, RunStatus

from fakes import make_article


class TestCli:
    """Tests for argument handling and output."""

    def test_init_db(self, temp_db, capsys):
        main(["init-db"])
        assert "Database initialised" in capsys.readouterr().out

    def test_trust(self, user_id, source_id, capsys):
        for i in range(5):
            article_id = make_article(source_id, f"Rated article number {i}")
            database.record_feedback(user_id, article_id, FeedbackAction.LIKED)

        main(["trust", str(user_id)])

        out = capsys.readouterr().out
        assert "1 sources had enough feedback" in out
        assert "1.20 (5 samples) Example Feed" in out

    def test_failed_run_exits_non_zero(self, user_id, capsys):
        failed = RunResult(user_id=user_id, status=RunStatus.FAILED)

        with patch("relevance_engine.cli.run_relevance", return_value=failed):
            with pytest.raises(SystemExit) as excinfo:
                main(["run", str(user_id)])

        assert excinfo.value.code == 1
        assert f"User {user_id}: failed" in capsys.readouterr().out

    def test_bad_config_reported(self, temp_db, tmp_path, capsys):
        path = tmp_path / "engine.yaml"
        path.write_text("not_a_setting: 1\n")

        with pytest.raises(SystemExit) as excinfo:
            main(["--config", str(path), "init-db"])

        assert excinfo.value.code == 1
        assert "not_a_setting" in capsys.readouterr().err
