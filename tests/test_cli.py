"""Tests for the pincer command line."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from conftest import make_settings

from pincer.__main__ import main


@pytest.fixture
def settings(monkeypatch, tmp_path):
    s = make_settings(store_dir=tmp_path / "store", groups_dir=tmp_path / "groups")
    monkeypatch.setattr("pincer.config._settings", s)
    return s


def _main(*argv: str) -> None:
    with patch("sys.argv", ["pincer", *argv]):
        main()


class TestRegister:
    def test_register_then_list(self, settings, capsys):
        _main("register", "fam@g.us", "Family", "family")
        _main("register", "me@s.whatsapp.net", "Me", "main")

        out = capsys.readouterr().out
        assert "Registered Family (fam@g.us) -> groups/family\n" in out
        assert "groups/main [main]" in out
        assert (settings.groups_dir / "family" / "logs").is_dir()

        _main("groups")
        listing = capsys.readouterr().out.splitlines()
        assert "fam@g.us\tFamily\tfamily" in listing
        assert "me@s.whatsapp.net\tMe\tmain\t[main]" in listing

    def test_invalid_folder_rejected(self, settings, capsys):
        with pytest.raises(SystemExit) as exc:
            _main("register", "fam@g.us", "Family", "../escape")

        assert exc.value.code == 2
        assert "invalid folder" in capsys.readouterr().err

    def test_empty_listing(self, settings, capsys):
        _main("groups")
        assert capsys.readouterr().out == "No groups registered.\n"


class TestBuild:
    def test_missing_dockerfile(self, monkeypatch, tmp_path, capsys):
        s = make_settings(project_root=tmp_path)
        monkeypatch.setattr("pincer.config._settings", s)

        with (
            patch("pincer.runtime.get_runtime"),
            pytest.raises(SystemExit) as exc,
        ):
            _main("build")

        assert exc.value.code == 1
        assert "No Dockerfile" in capsys.readouterr().err
