"""CLI smoke tests using typer's CliRunner."""

import json

import pytest
from typer.testing import CliRunner

from vartree import __version__
from vartree import config as config_module
from vartree.cli.app import app
from vartree.storage import open_run_db

runner = CliRunner()


def _json(result):
    return json.loads(result.stdout)


@pytest.fixture
def ledger(tmp_path):
    return tmp_path / "ledger" / "runs.db"


@pytest.fixture
def built_run(sales_sqlite, ledger):
    """Build the sales tree through the CLI and return its run id."""
    result = runner.invoke(
        app,
        [
            "--json",
            "build",
            "-t", "sales",
            "--target", "cnt",
            "-c", "region,product",
            "-d", str(sales_sqlite),
            "--ledger", str(ledger),
        ],
    )
    assert result.exit_code == 0, result.output
    return _json(result)["run_id"]


class TestBuildCommand:
    def test_build_json(self, sales_sqlite, ledger, tmp_path):
        model_path = tmp_path / "out" / "model.json"
        result = runner.invoke(
            app,
            [
                "--json",
                "build",
                "-t", "sales",
                "--target", "cnt",
                "-c", "region,product",
                "-d", str(sales_sqlite),
                "--ledger", str(ledger),
                "--debug-messages",
                "-o", str(model_path),
            ],
        )
        assert result.exit_code == 0, result.output
        data = _json(result)
        assert data["status"] == "success"
        assert data["build_status"] == "completed"
        assert data["depth"] == 2
        assert data["branches"] == 3
        assert data["leaves"] == 4
        assert data["failed"] == 0
        assert data["exit_code"] == 0

        model = json.loads(model_path.read_text())
        assert model["nextAttribute"] == "region"

        with open_run_db(ledger) as db:
            record = db.get_run(data["run_id"])
        assert record.status == "completed"
        assert record.training_parameters["debugMessages"] is True

    def test_build_from_spec(self, sales_sqlite, ledger, tmp_path):
        spec = tmp_path / "sales.yaml"
        spec.write_text(
            "table_name: sales\n"
            "target_column: cnt\n"
            "columns: [region, product]\n"
            "training:\n"
            "  max_depth: 1\n"
        )
        result = runner.invoke(
            app,
            ["--json", "build", "-s", str(spec), "-d", str(sales_sqlite), "--ledger", str(ledger)],
        )
        assert result.exit_code == 0, result.output
        data = _json(result)
        assert data["depth"] == 1
        assert data["leaves"] == 2

    def test_spec_without_training_uses_config(self, sales_sqlite, ledger, tmp_path):
        config_module.configure(
            config_module.VartreeConfig(training=config_module.TrainingConfig(max_depth=1))
        )
        spec = tmp_path / "sales.yaml"
        spec.write_text("table_name: sales\ntarget_column: cnt\ncolumns: [region, product]\n")

        result = runner.invoke(
            app,
            ["--json", "build", "-s", str(spec), "-d", str(sales_sqlite), "--ledger", str(ledger)],
        )
        assert result.exit_code == 0, result.output
        data = _json(result)
        assert data["depth"] == 1
        with open_run_db(ledger) as db:
            assert db.get_run(data["run_id"]).training_parameters["maxDepth"] == 1

    def test_failed_branches_warn(self, sales_sqlite, ledger, counting, monkeypatch):
        from vartree.cli.commands import build as build_module
        from vartree.core.providers.sqlite import SQLiteStatsProvider

        def flaky_provider(name, **kwargs):
            return counting(
                SQLiteStatsProvider(kwargs["database"]),
                fail_when=lambda op, bindings: op == "node_stats" and bindings == ("B",),
            )

        monkeypatch.setattr(build_module, "get_provider", flaky_provider)
        result = runner.invoke(
            app,
            [
                "--json", "build",
                "-t", "sales",
                "--target", "cnt",
                "-c", "region,product",
                "-d", str(sales_sqlite),
                "--ledger", str(ledger),
                "--retries", "1",
            ],
        )
        assert result.exit_code == 0, result.output
        data = _json(result)
        assert data["failed"] == 1
        assert data["leaves"] == 2
        assert "1 branch(es) failed" in data["warnings"][0]["message"]

    def test_training_flags_override_config(self, sales_sqlite, ledger):
        result = runner.invoke(
            app,
            [
                "--json",
                "build",
                "-t", "sales",
                "--target", "cnt",
                "-c", "region,product",
                "-d", str(sales_sqlite),
                "--ledger", str(ledger),
                "--max-depth", "0",
            ],
        )
        assert result.exit_code == 0, result.output
        data = _json(result)
        assert data["depth"] == 0
        assert data["leaves"] == 1

    def test_human_output(self, sales_sqlite, ledger):
        result = runner.invoke(
            app,
            [
                "build",
                "-t", "sales",
                "--target", "cnt",
                "-c", "region,product",
                "-d", str(sales_sqlite),
                "--ledger", str(ledger),
                "--quiet",
                "--show-tree",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "Built run" in result.output
        assert "region" in result.output

    def test_missing_arguments(self, ledger):
        result = runner.invoke(app, ["--json", "build", "-t", "sales", "--ledger", str(ledger)])
        assert result.exit_code == 1
        assert "Invalid build request" in _json(result)["errors"][0]["message"]

    def test_invalid_identifier(self, sales_sqlite, ledger):
        result = runner.invoke(
            app,
            [
                "--json", "build",
                "-t", "sales; drop",
                "--target", "cnt",
                "-c", "region",
                "-d", str(sales_sqlite),
                "--ledger", str(ledger),
            ],
        )
        assert result.exit_code == 1

    def test_missing_database(self, tmp_path, ledger):
        result = runner.invoke(
            app,
            [
                "--json", "build",
                "-t", "sales",
                "--target", "cnt",
                "-c", "region",
                "-d", str(tmp_path / "missing.sqlite"),
                "--ledger", str(ledger),
            ],
        )
        assert result.exit_code == 3

    def test_missing_spec(self, tmp_path, ledger):
        result = runner.invoke(
            app, ["--json", "build", "-s", str(tmp_path / "nope.yaml"), "--ledger", str(ledger)]
        )
        assert result.exit_code == 3

    def test_failed_build_exit_code(self, tmp_path, ledger):
        import sqlite3

        db_path = tmp_path / "empty.sqlite"
        conn = sqlite3.connect(str(db_path))
        conn.execute("CREATE TABLE sales (region TEXT, cnt REAL)")
        conn.commit()
        conn.close()

        result = runner.invoke(
            app,
            [
                "--json", "build",
                "-t", "sales",
                "--target", "cnt",
                "-c", "region",
                "-d", str(db_path),
                "--ledger", str(ledger),
            ],
        )
        assert result.exit_code == 2
        data = _json(result)
        assert data["build_status"] == "failed"
        with open_run_db(ledger) as db:
            assert db.get_run(data["run_id"]).status == "failed"


class TestRunsCommand:
    def test_list(self, built_run, ledger):
        result = runner.invoke(app, ["--json", "runs", "--ledger", str(ledger)])
        assert result.exit_code == 0
        runs = _json(result)["runs"]
        assert [r["Run"] for r in runs] == [built_run]
        assert runs[0]["Status"] == "completed"

    def test_list_filtered(self, built_run, ledger):
        result = runner.invoke(
            app, ["--json", "runs", "--ledger", str(ledger), "--status", "failed"]
        )
        assert _json(result)["runs"] == []

    def test_show(self, built_run, ledger):
        result = runner.invoke(app, ["--json", "runs", built_run, "--ledger", str(ledger)])
        assert result.exit_code == 0
        data = _json(result)
        assert data["run"]["status"] == "completed"
        assert data["run"]["table_name"] == "sales"
        assert data["model_summary"] == {"depth": 2, "branches": 3, "leaves": 4, "failed": 0}
        assert data["progress"]["leaves"] == 4

    def test_show_tree(self, built_run, ledger):
        result = runner.invoke(app, ["runs", built_run, "--ledger", str(ledger), "--tree"])
        assert result.exit_code == 0
        assert "product" in result.output

    def test_export(self, built_run, ledger, tmp_path):
        export = tmp_path / "export" / "model.json"
        result = runner.invoke(
            app, ["--json", "runs", built_run, "--ledger", str(ledger), "--export", str(export)]
        )
        assert result.exit_code == 0
        model = json.loads(export.read_text())
        assert [c["selectionCriteriaValue"] for c in model["children"]] == ["A", "B"]

    def test_unknown_run(self, built_run, ledger):
        result = runner.invoke(app, ["--json", "runs", "run_missing", "--ledger", str(ledger)])
        assert result.exit_code == 4

    def test_missing_ledger(self, tmp_path):
        result = runner.invoke(app, ["runs", "--ledger", str(tmp_path / "none.db")])
        assert result.exit_code == 3


class TestPredictCommand:
    def test_rows(self, built_run, ledger, tmp_path):
        rows_file = tmp_path / "rows.json"
        rows_file.write_text(json.dumps([{"region": "B", "product": "y"}]))
        result = runner.invoke(
            app,
            [
                "--json",
                "predict",
                built_run,
                "--ledger", str(ledger),
                "--row", '{"region": "A", "product": "x"}',
                "--row", '{"region": "C", "product": "x"}',
                "--rows", str(rows_file),
            ],
        )
        assert result.exit_code == 0, result.output
        assert _json(result)["predictions"] == [11.0, None, 201.0]

    def test_invalid_row(self, built_run, ledger):
        result = runner.invoke(
            app, ["--json", "predict", built_run, "--ledger", str(ledger), "--row", "{oops"]
        )
        assert result.exit_code == 1

    def test_no_rows(self, built_run, ledger):
        result = runner.invoke(app, ["predict", built_run, "--ledger", str(ledger)])
        assert result.exit_code == 1

    def test_unknown_run(self, built_run, ledger):
        result = runner.invoke(
            app, ["predict", "run_missing", "--ledger", str(ledger), "--row", "{}"]
        )
        assert result.exit_code == 4


class TestConfigCommand:
    def test_config_show(self):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "Training" in result.output
        assert "Build" in result.output

    def test_config_set_and_reset(self):
        result = runner.invoke(app, ["config", "set", "training.max_depth", "4"])
        assert result.exit_code == 0
        saved = json.loads(config_module.CONFIG_FILE.read_text())
        assert saved["training"]["max_depth"] == 4

        result = runner.invoke(app, ["config", "reset"])
        assert result.exit_code == 0
        assert not config_module.CONFIG_FILE.exists()

    def test_config_set_invalid_key(self):
        result = runner.invoke(app, ["config", "set", "invalid.key", "value"])
        assert result.exit_code == 1
        assert "Unknown key" in result.output

    def test_config_set_invalid_int_value(self):
        result = runner.invoke(app, ["config", "set", "build.max_concurrent", "abc"])
        assert result.exit_code == 1
        assert "Invalid integer" in result.output

    def test_config_set_missing_args(self):
        result = runner.invoke(app, ["config", "set"])
        assert result.exit_code == 1

    def test_config_unknown_action(self):
        result = runner.invoke(app, ["config", "unknown_action"])
        assert result.exit_code == 1
        assert "Unknown action" in result.output


class TestVersionFlag:
    def test_version_output(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"vartree {__version__}" in result.output
