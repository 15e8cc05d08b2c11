"""Tests for the jailhouse command line."""
import json
import os
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from jailhouse.main import app


runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in list(os.environ):
        if name.startswith("JAILHOUSE_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _write_config(path: Path, **values) -> Path:
    path.write_text(yaml.safe_dump({k: str(v) if isinstance(v, Path) else v for k, v in values.items()}))
    return path


class TestImageName:
    def test_fixed_image(self, isolated: Path) -> None:
        _write_config(isolated / "jailhouse.yaml", image_name="render:1")

        result = runner.invoke(app, ["image-name"])

        assert result.exit_code == 0
        assert result.output.strip() == "render:1"

    def test_bundle_image(self, isolated: Path) -> None:
        inmates = isolated / "inmates"
        inmates.mkdir()
        (inmates / "pages.py").write_text("def page(n):\n    return n\n")
        config = _write_config(isolated / "custom.yaml", inmate_dir=inmates, inmate="pages")

        result = runner.invoke(app, ["image-name", "--config", str(config)])

        assert result.exit_code == 0
        assert result.output.strip().startswith("jailhouse:")

    def test_nothing_configured(self) -> None:
        result = runner.invoke(app, ["image-name"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_missing_config_file(self, isolated: Path) -> None:
        result = runner.invoke(app, ["image-name", "-c", str(isolated / "absent.yaml")])

        assert result.exit_code == 1
        assert "Error loading configuration" in result.output


class TestCall:
    @pytest.fixture
    def inmate_config(self, isolated: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
        (isolated / "jh_cli_inmate.py").write_text(textwrap.dedent("""
            def total(values):
                return sum(values)

            def greet(name):
                return {"greeting": f"hello {name}"}

            def fail():
                raise ValueError("nope")
        """))
        monkeypatch.syspath_prepend(str(isolated))
        return _write_config(isolated / "jailhouse.yaml", inmate="jh_cli_inmate")

    def test_json_arguments(self, inmate_config: Path) -> None:
        result = runner.invoke(app, ["call", "total", "[1, 2, 3]", "--no-proxy"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output.strip().splitlines()[-1]) == 6

    def test_plain_string_argument(self, inmate_config: Path) -> None:
        result = runner.invoke(app, ["call", "greet", "ada", "--no-proxy"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output.strip().splitlines()[-1]) == {"greeting": "hello ada"}

    def test_unknown_method(self, inmate_config: Path) -> None:
        result = runner.invoke(app, ["call", "missing", "--no-proxy"])

        assert result.exit_code == 1
        assert "No inmate method named 'missing'" in result.output


class TestBuildImage:
    def test_reports_image(self, isolated: Path) -> None:
        _write_config(isolated / "jailhouse.yaml", image_name="render:1")

        with patch("jailhouse.guard.Guard.ensure_image", AsyncMock(return_value="render:1")):
            result = runner.invoke(app, ["build-image"])

        assert result.exit_code == 0, result.output
        assert "Image ready" in result.output
        assert "render:1" in result.output


class TestReap:
    def test_reports_count(self) -> None:
        with patch("jailhouse.main.reap_managed_containers", AsyncMock(return_value=2)) as reap:
            result = runner.invoke(app, ["reap"])

        assert result.exit_code == 0, result.output
        assert "Removed 2 container(s)" in result.output
        reap.assert_awaited_once()
