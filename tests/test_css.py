"""Tests for the Tailwind stylesheet step."""

import pytest

from bible_build.css import CssGenerator
from bible_build.errors import InputError, StylesheetError

from conftest import make_client


@pytest.fixture
def css(tmp_path):
    site = make_client(tmp_path)
    return CssGenerator(site, "style/tailwind.css", "style/output.css", "tailwind.config.js")


class TestCssGenerator:

    def test_command(self, css):
        assert css.command() == [
            "tailwindcss", "-i", "./style/tailwind.css", "-o", "./style/output.css",
            "--config", "./tailwind.config.js",
        ]
        assert css.command(watch=True)[-1] == "--watch"

    def test_generate(self, css, toolchain, tmp_path):
        out = css.generate(home=tmp_path / "home", runner=toolchain)
        assert out == css.output_path
        assert out.read_text(encoding="utf-8").startswith("/* generated */")
        assert toolchain.calls[0][1] == css.root

    def test_missing_entry(self, css, toolchain, tmp_path):
        css.entry_path.unlink()
        with pytest.raises(InputError, match="stylesheet entry"):
            css.generate(home=tmp_path / "home", runner=toolchain)
        assert toolchain.calls == []

    def test_missing_config(self, css, toolchain, tmp_path):
        css.config_path.unlink()
        with pytest.raises(InputError, match="stylesheet config"):
            css.generate(home=tmp_path / "home", runner=toolchain)

    def test_tool_failure(self, css, toolchain, tmp_path):
        toolchain.fail["tailwindcss"] = 1
        with pytest.raises(StylesheetError):
            css.generate(home=tmp_path / "home", runner=toolchain)

    def test_ensure_output_runs_once(self, css, toolchain, tmp_path):
        css.ensure_output(home=tmp_path / "home", runner=toolchain)
        css.ensure_output(home=tmp_path / "home", runner=toolchain)
        assert len(toolchain.calls) == 1
